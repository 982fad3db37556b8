"""FastAPI application exposing the payment reconciliation engine.

The app itself lives in ``payrecon_api.main``; the services it wraps are in
the ``payrecon`` package and have no HTTP dependency.
"""
