"""
Mira - wearable voice assistant turn controller

This is the root package for Mira, containing shared utilities and the
assistant core that decides when the wearer is talking to the assistant,
gathers photo and location context for the turn, and dispatches the final
query to a language model.

Core modules:
- assistant: Turn-taking state machine, query finalization, model providers
- location_resolver: Reverse geocoding and timezone lookup for coordinates
- utils: Env parsing, text wrapping, and async helpers
"""

__version__ = "0.4.2"
