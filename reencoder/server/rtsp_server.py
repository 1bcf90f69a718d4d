"""
On-demand RTSP serving.

Every client connection gets its own media pipeline

    appsrc -> h264parse -> rtph264pay (pay0)

and its appsrc is attached to the OutputBridge as a consumer. When the media
is unprepared (client gone), the consumer is detached. The server runs its own
GLib main context on a dedicated thread.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

import gi

gi.require_version("Gst", "1.0")
gi.require_version("GstRtspServer", "1.0")
from gi.repository import GLib, Gst, GstRtspServer  # noqa: E402

from reencoder.bridge.consumers import Consumer
from reencoder.bridge.output_bridge import ConsumerHandle, OutputBridge
from reencoder.config import PipelineConfig
from reencoder.errors import ConsumerForwardError
from reencoder.stage.unit_ring import ProducedUnit

logger = logging.getLogger(__name__)

APPSRC_MAX_BYTES = 2 * 1024 * 1024

LAUNCH_TEMPLATE = (
    "( appsrc name=src is-live=true format=time do-timestamp=true "
    "caps=video/x-h264,stream-format=byte-stream,alignment=au "
    "! h264parse ! rtph264pay name=pay0 pt=96 config-interval=-1 )"
)


class AppSrcConsumer(Consumer):
    """Pushes units into one client's appsrc."""

    def __init__(self, appsrc: Gst.Element, name: str = "rtsp-client") -> None:
        self.appsrc = appsrc
        self.name = name

    def send(self, unit: ProducedUnit) -> None:
        buf = Gst.Buffer.new_wrapped(unit.data)
        ret = self.appsrc.emit("push-buffer", buf)
        if ret != Gst.FlowReturn.OK:
            raise ConsumerForwardError(f"{self.name}: push-buffer returned {ret.value_nick}")

    def close(self) -> None:
        self.appsrc.emit("end-of-stream")


class RtspStreamServer:
    """
    GstRtspServer front end for the OutputBridge.

    Args:
        config: Output port and mount path are read from config.output
        bridge: Bridge that owns the per-client feeders
    """

    def __init__(self, config: PipelineConfig, bridge: OutputBridge) -> None:
        self.port = config.output.port
        self.path = config.output.path
        self.bridge = bridge
        self._context: Optional[GLib.MainContext] = None
        self._loop: Optional[GLib.MainLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._source_id: Optional[int] = None
        self._server: Optional[GstRtspServer.RTSPServer] = None
        self._handles: Dict[int, ConsumerHandle] = {}
        self._handles_lock = threading.Lock()
        self._client_seq = 0

    @property
    def url(self) -> str:
        return f"rtsp://localhost:{self.port}{self.path}"

    def start(self) -> None:
        """
        Bind the RTSP port and start serving.

        Raises:
            RuntimeError: If the server cannot be attached (port in use)
        """
        self._context = GLib.MainContext.new()
        self._loop = GLib.MainLoop.new(self._context, False)

        server = GstRtspServer.RTSPServer()
        server.set_service(str(self.port))

        factory = GstRtspServer.RTSPMediaFactory()
        factory.set_launch(LAUNCH_TEMPLATE)
        factory.set_shared(False)
        factory.connect("media-configure", self._on_media_configure)
        server.get_mount_points().add_factory(self.path, factory)

        source_id = server.attach(self._context)
        if source_id == 0:
            raise RuntimeError(f"Failed to attach RTSP server on port {self.port}")
        self._server = server
        self._source_id = source_id

        self._thread = threading.Thread(target=self._loop.run, daemon=True, name="RtspServerLoop")
        self._thread.start()
        logger.info(f"RTSP server ready at {self.url}")

    def stop(self) -> None:
        if self._loop is None:
            return
        if self._source_id is not None and self._context is not None:
            source = self._context.find_source_by_id(self._source_id)
            if source is not None:
                source.destroy()
            self._source_id = None
        self._loop.quit()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
            if self._thread.is_alive():
                logger.warning("RTSP server loop did not stop within timeout")
        self._thread = None
        self._loop = None
        self._context = None
        self._server = None

        with self._handles_lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            self.bridge.detach(handle)
        logger.info("RTSP server stopped")

    @property
    def client_count(self) -> int:
        with self._handles_lock:
            return len(self._handles)

    def _on_media_configure(self, factory: GstRtspServer.RTSPMediaFactory,
                            media: GstRtspServer.RTSPMedia) -> None:
        element = media.get_element()
        appsrc = element.get_child_by_name("src") if element is not None else None
        if appsrc is None:
            logger.error("Could not find appsrc element in client pipeline")
            return
        appsrc.set_property("block", False)
        appsrc.set_property("max-bytes", APPSRC_MAX_BYTES)

        self._client_seq += 1
        consumer = AppSrcConsumer(appsrc, name=f"rtsp-client-{self._client_seq}")
        try:
            handle = self.bridge.attach_consumer(consumer)
        except RuntimeError as e:
            logger.warning(f"Rejecting RTSP client: {e}")
            return
        with self._handles_lock:
            self._handles[id(media)] = handle
        media.connect("unprepared", self._on_media_unprepared)
        logger.info(f"RTSP client connected ({consumer.name})")

    def _on_media_unprepared(self, media: GstRtspServer.RTSPMedia) -> None:
        with self._handles_lock:
            handle = self._handles.pop(id(media), None)
        if handle is not None:
            logger.info(f"RTSP client disconnected ({handle.name})")
            # The feeder thread may still be pushing; don't join on the GLib thread
            threading.Thread(
                target=self.bridge.detach, args=(handle,), daemon=True, name="RtspDetach"
            ).start()
