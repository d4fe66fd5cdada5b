"""Secure HLS playback gateway."""
