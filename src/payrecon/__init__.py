"""Payment-event reconciliation engine.

Core library shared by the HTTP API, the Lambda handlers and the maintenance
scripts: models, DynamoDB-backed services and logging utilities.
"""

__version__ = "0.1.0"
