"""Application modules.

- pitch: pitch records, upload URLs, finalize/validate, delete
- transcoding: ffprobe inspection, rendition planning, ffmpeg HLS packaging, worker
- streaming: secure playback gateway
"""
