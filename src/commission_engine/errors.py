"""Base exception for the commission engine.

Concrete exceptions are defined next to the code that raises them.
"""


class CommissionEngineError(Exception):
    """Base class for all commission engine errors."""
