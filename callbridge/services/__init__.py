"""
Services module for persisting call artifacts.

Key components:
- storage: The Storage protocol (``create_call_recording``,
  ``create_conversation_transcript``) with in-memory and JSON-file
  implementations.
"""

# Services module initialization
