from .stored_preference import stored_preference_crud

__all__ = ["stored_preference_crud"]
