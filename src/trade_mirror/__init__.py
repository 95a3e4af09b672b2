__all__ = [
    "settings",
    "api",
]
