"""
GStreamer transcode stage for Jetson hardware.

    rtspsrc -> rtph264depay -> h264parse -> nvv4l2decoder -> nvvidconv
    -> nvv4l2h264enc -> h264parse -> appsink

rtspsrc exposes its source pad only after RTSP negotiation, so the first link
is made late, in the pad-added handler. Every appsink sample becomes a
ProducedUnit; ERROR and EOS bus messages become RuntimeFaults.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Dict, List, Optional, Tuple

import gi

gi.require_version("Gst", "1.0")
gi.require_version("GstApp", "1.0")
from gi.repository import Gst, GstApp  # noqa: E402,F401

from reencoder.config import PipelineConfig
from reencoder.errors import ActivateError, BuildError, FaultKind, StageKind
from reencoder.stage.base import DEFAULT_RING_CAPACITY, TranscodeStageAdapter
from reencoder.stage.encoder_settings import EncoderSettings, bitrate_properties
from reencoder.telemetry import TelemetryRegistry

logger = logging.getLogger(__name__)

H264_AU_CAPS = "video/x-h264,stream-format=byte-stream,alignment=au"

# rtspsrc "protocols" flags
RTSP_LOWER_TRANS_UDP = 1
RTSP_LOWER_TRANS_TCP = 4

BUS_POLL_INTERVAL_NS = 100 * 1000 * 1000

# (name, factory, stage)
_ELEMENTS: List[Tuple[str, str, StageKind]] = [
    ("src", "rtspsrc", StageKind.ACQUISITION),
    ("depay", "rtph264depay", StageKind.ACQUISITION),
    ("parse_in", "h264parse", StageKind.PARSE),
    ("decoder", "nvv4l2decoder", StageKind.DECODE),
    ("conv", "nvvidconv", StageKind.TRANSFORM),
    ("enc", "nvv4l2h264enc", StageKind.ENCODE),
    ("parse_out", "h264parse", StageKind.PARSE),
    ("sink", "appsink", StageKind.OUTPUT),
]


class GstTranscodeStage(TranscodeStageAdapter):
    """Hardware re-encode pipeline driven by GStreamer."""

    def __init__(
        self,
        config: PipelineConfig,
        telemetry: TelemetryRegistry,
        ring_capacity: int = DEFAULT_RING_CAPACITY,
    ) -> None:
        super().__init__(telemetry, ring_capacity=ring_capacity)
        self._config = config
        self._lock = threading.Lock()
        self._pipeline: Optional[Gst.Pipeline] = None
        self._elements: Dict[str, Gst.Element] = {}
        self._bus_thread: Optional[threading.Thread] = None
        self._bus_stop = threading.Event()
        self.negotiated: Future = Future()

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(self) -> None:
        with self._lock:
            if self._pipeline is not None:
                raise BuildError(StageKind.ACQUISITION, "pipeline already built")
            try:
                self._build_locked()
            except BuildError:
                self._release_locked()
                raise
        logger.info("Pipeline built OK")

    def _build_locked(self) -> None:
        pipeline = Gst.Pipeline.new("encoder")
        if pipeline is None:
            raise BuildError(StageKind.ACQUISITION, "could not create pipeline")
        self._pipeline = pipeline

        missing: List[Tuple[str, StageKind]] = []
        for name, factory, stage in _ELEMENTS:
            element = Gst.ElementFactory.make(factory, name)
            if element is None:
                missing.append((factory, stage))
            else:
                self._elements[name] = element
        if missing:
            logger.error("Missing GStreamer plugins!")
            for factory, _stage in missing:
                logger.error(f"  - {factory}")
            factory, stage = missing[0]
            raise BuildError(stage, "element not available", element=factory)

        el = self._elements
        self._configure_source(el["src"])
        el["decoder"].set_property("enable-max-performance", True)
        el["parse_in"].set_property("config-interval", -1)
        self._configure_encoder(el["enc"])
        el["parse_out"].set_property("config-interval", -1)

        sink = el["sink"]
        sink.set_property("emit-signals", True)
        sink.set_property("sync", False)
        sink.set_property("max-buffers", 3)
        sink.set_property("drop", True)
        sink.set_property("caps", Gst.Caps.from_string(H264_AU_CAPS))
        sink.connect("new-sample", self._on_new_sample)

        for element in el.values():
            pipeline.add(element)

        self._link(el["depay"], el["parse_in"], StageKind.ACQUISITION)
        self._link(el["parse_in"], el["decoder"], StageKind.DECODE)
        self._link(el["decoder"], el["conv"], StageKind.DECODE)

        enc = self._config.encoder
        # No framerate in the NVMM caps: the decoder reports 0/1
        raw_caps = (
            f"video/x-raw(memory:NVMM),format=NV12,width={enc.width},height={enc.height}"
        )
        self._link(el["conv"], el["enc"], StageKind.TRANSFORM, raw_caps)
        self._link(el["enc"], el["parse_out"], StageKind.ENCODE, "video/x-h264,stream-format=byte-stream")
        self._link(el["parse_out"], sink, StageKind.PARSE)

        el["src"].connect("pad-added", self._on_pad_added)

    def _configure_source(self, src: Gst.Element) -> None:
        rtsp = self._config.rtsp
        protocols = RTSP_LOWER_TRANS_TCP if rtsp.transport == "tcp" else RTSP_LOWER_TRANS_UDP
        src.set_property("location", rtsp.url)
        src.set_property("protocols", protocols)
        src.set_property("latency", rtsp.latency_ms)
        src.set_property("tcp-timeout", rtsp.tcp_timeout_ms * 1000)
        src.set_property("retry", rtsp.retry_count)
        src.set_property("do-retransmission", False)
        src.set_property("drop-on-latency", True)
        src.set_property("ntp-sync", False)

    def _configure_encoder(self, element: Gst.Element) -> None:
        enc = self._config.encoder
        settings = EncoderSettings(
            target_bitrate_kbps=enc.target_bitrate_kbps,
            max_bitrate_kbps=enc.max_bitrate_kbps,
            idr_interval=enc.idr_interval,
            preset=enc.preset,
            profile=enc.profile,
            control_rate=enc.control_rate,
            framerate=enc.framerate,
        )
        for prop, value in settings.element_properties().items():
            element.set_property(prop, value)
        logger.info(
            f"Encoder configured: {enc.target_bitrate_kbps} kbps target, "
            f"{enc.max_bitrate_kbps} kbps max, {enc.control_rate} mode, {enc.preset} preset, "
            f"{enc.profile} profile, IDR every {enc.idr_interval} frames"
        )

    def _link(self, upstream: Gst.Element, downstream: Gst.Element, stage: StageKind,
              caps: Optional[str] = None) -> None:
        if caps is None:
            ok = upstream.link(downstream)
        else:
            ok = upstream.link_filtered(downstream, Gst.Caps.from_string(caps))
        if not ok:
            link = f"{upstream.get_name()}->{downstream.get_name()}"
            detail = f": {caps}" if caps else ""
            logger.error(f"Link failed ({link}){detail}")
            raise BuildError(stage, f"link failed{detail}", element=link)

    # ------------------------------------------------------------------
    # Activate / teardown
    # ------------------------------------------------------------------

    def activate(self) -> None:
        with self._lock:
            if self._pipeline is None:
                raise ActivateError("pipeline not built")
            ret = self._pipeline.set_state(Gst.State.PLAYING)
            if ret == Gst.StateChangeReturn.FAILURE:
                raise ActivateError("pipeline refused to go to PLAYING")

            self._bus_stop.clear()
            self._bus_thread = threading.Thread(
                target=self._bus_loop,
                args=(self._pipeline.get_bus(),),
                daemon=True,
                name="StageBusWatch",
            )
            self._bus_thread.start()
            self._mark_active()
        logger.info("Pipeline PLAYING")

    def teardown(self) -> None:
        with self._lock:
            self._mark_inactive()
            self._bus_stop.set()
            self._release_locked()
        thread = self._bus_thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=1.0)
            if thread.is_alive():
                logger.warning("Bus watch thread did not stop within timeout")
        self._bus_thread = None

    def _release_locked(self) -> None:
        if self._pipeline is not None:
            self._pipeline.set_state(Gst.State.NULL)
            self._pipeline = None
            logger.info("Pipeline torn down")
        self._elements = {}
        if not self.negotiated.done():
            self.negotiated.cancel()

    def update_bitrate(self, target_kbps: int, max_kbps: int) -> None:
        with self._lock:
            enc = self._elements.get("enc")
            if enc is None or not self.is_active:
                logger.warning("Cannot set bitrate: encoder not initialized")
                return
            for prop, value in bitrate_properties(target_kbps, max_kbps).items():
                enc.set_property(prop, value)
        logger.info(f"Bitrate updated: {target_kbps} / {max_kbps} kbps")

    # ------------------------------------------------------------------
    # Callbacks (GStreamer streaming threads)
    # ------------------------------------------------------------------

    def _on_new_sample(self, sink: Gst.Element) -> Gst.FlowReturn:
        sample = sink.emit("pull-sample")
        if sample is None:
            return Gst.FlowReturn.OK
        buf = sample.get_buffer()
        if buf is None:
            return Gst.FlowReturn.OK
        ok, info = buf.map(Gst.MapFlags.READ)
        if not ok:
            return Gst.FlowReturn.OK
        try:
            data = bytes(info.data)
        finally:
            buf.unmap(info)
        pts = None if buf.pts == Gst.CLOCK_TIME_NONE else buf.pts
        self._publish(data, pts)
        return Gst.FlowReturn.OK

    def _on_pad_added(self, src: Gst.Element, pad: Gst.Pad) -> None:
        caps = pad.get_current_caps() or pad.query_caps(None)
        if caps is None or caps.get_size() == 0:
            return
        structure = caps.get_structure(0)
        if not structure.get_name().startswith("application/x-rtp"):
            return
        if structure.get_string("encoding-name") != "H264":
            return

        depay = self._elements.get("depay")
        if depay is None:
            return
        sink_pad = depay.get_static_pad("sink")
        if sink_pad is None or sink_pad.is_linked():
            return
        if pad.link(sink_pad) == Gst.PadLinkReturn.OK:
            logger.info("Linked rtspsrc -> depay")
            if not self.negotiated.done():
                self.negotiated.set_result(caps.to_string())
        else:
            logger.error("Failed to link rtspsrc pad to depayloader")

    def _bus_loop(self, bus: Gst.Bus) -> None:
        mask = (
            Gst.MessageType.ERROR
            | Gst.MessageType.EOS
            | Gst.MessageType.WARNING
            | Gst.MessageType.STATE_CHANGED
        )
        while not self._bus_stop.is_set():
            msg = bus.timed_pop_filtered(BUS_POLL_INTERVAL_NS, mask)
            if msg is None:
                continue
            self._on_bus_message(msg)

    def _on_bus_message(self, msg: Gst.Message) -> None:
        if msg.type == Gst.MessageType.ERROR:
            err, debug = msg.parse_error()
            logger.error(f"ERROR: {err.message if err else '?'}")
            if debug:
                logger.debug(debug)
            self._signal_fault(FaultKind.ERROR, err.message if err else "")
        elif msg.type == Gst.MessageType.EOS:
            logger.warning("EOS")
            self._signal_fault(FaultKind.END_OF_STREAM)
        elif msg.type == Gst.MessageType.WARNING:
            warn, _debug = msg.parse_warning()
            src_name = msg.src.get_name() if msg.src else "unknown"
            logger.warning(f"WARNING from {src_name}: {warn.message if warn else '?'}")
        elif msg.type == Gst.MessageType.STATE_CHANGED:
            if msg.src == self._pipeline:
                old, new, _pending = msg.parse_state_changed()
                logger.info(
                    f"{Gst.Element.state_get_name(old)} -> {Gst.Element.state_get_name(new)}"
                )
