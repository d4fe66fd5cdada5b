"""Elevator pitch video backend.

Short user-owned pitch videos are uploaded straight to object storage,
probed and checked against the owner's plan, transcoded into AES-128
encrypted HLS by a single in-process worker, and played back through
access-controlled proxy routes.

Modules:
    - core: Configuration, database, storage, logging, metrics, tracing
    - modules.pitch: Upload API, pitch records and entitlement rules
    - modules.transcoding: Media probing, HLS packaging and the job worker
    - modules.streaming: Playlist rewriting and segment/key delivery
"""

__version__ = "0.1.0"
