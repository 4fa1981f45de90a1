"""CamRelay: MJPEG camera relay with on-demand transcoding and motion recording.

Decoder processes produce MJPEG on stdout; CamRelay splits the byte stream
into JPEG frames, fans them out to HTTP viewers, snapshot caches, motion
detectors and recorders, and pipes them through transcoder processes on
request.
"""

__version__ = "1.0.0"
