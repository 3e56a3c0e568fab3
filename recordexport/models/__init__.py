from .stored_preference import StoredPreference
