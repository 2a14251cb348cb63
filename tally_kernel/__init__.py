"""
Tally Kernel

Shared foundation for the physical inventory counting core:
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with request-scoped context
- Injectable clock for deterministic timestamps
- Workflow value objects for the stage state machine
- SQLAlchemy declarative base and transactional session scope
"""

__version__ = "0.1.0"
