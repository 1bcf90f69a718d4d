"""
Downstream serving layer.

- RtspStreamServer (reencoder.server.rtsp_server): on-demand RTSP server, one
  OutputBridge consumer per connected client. Needs the GStreamer RTSP server
  bindings and is imported on demand.
"""
