from .run_history import RunHistory

__all__ = ["RunHistory"]
