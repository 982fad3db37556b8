"""API-specific request/response models.

Request and response bodies use camelCase field names; snake_case is also
accepted on input. Domain models are in ``payrecon.models`` and are mapped
onto these at the route boundary.

Modules:
- common: Shared model configuration
- payments: Payment intent, refund and webhook models
- deals: Marketer deal models
- earnings: Earnings analytics models
"""

__all__: list[str] = []
