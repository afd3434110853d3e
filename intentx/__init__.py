"""IntentX - signed swap intents with at-most-once execution."""

__version__ = "0.1.0"
