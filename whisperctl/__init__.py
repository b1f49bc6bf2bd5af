"""whisperctl - command-line interface for the local Whisper node."""
