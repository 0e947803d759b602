from .router import ModelError, run_structured

__all__ = ["ModelError", "run_structured"]
