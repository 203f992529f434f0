"""
ApplyHub Program Builder Backend

FastAPI service for multi-tenant program applications:

- main.py: FastAPI application factory and router wiring
- services/review_workflow.py: review/publish state machine
- services/schema_resolver.py: canonical application schemas
- services/builder_session.py: form builder editing state
"""

__version__ = "1.0.0"
