"""
Mealbox Kernel

Shared infrastructure for the subscription billing and job engine:
- Declarative ORM base with UUID keys and UTC timestamps
- Engine/session management with commit-or-rollback scopes
- Injectable clock
- Typed exceptions with machine-readable codes
- Structured JSON logging
"""

__version__ = "0.1.0"
