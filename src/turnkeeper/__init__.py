"""Turn-taking core for realtime voice-channel assistants.

This package segments per-participant PCM audio into utterances, arbitrates
turn-taking between human speech and synthesized playback (including
barge-in), and manages the per-destination session lifecycle.
"""

__version__ = "0.1.0"
