"""
Transcode stage boundary.

- TranscodeStageAdapter: interface every stage implementation provides
- UnitRing / ProducedUnit: fan-out of produced access units
- GstTranscodeStage (reencoder.stage.gst_stage): Jetson GStreamer implementation,
  imported on demand because it needs the GStreamer bindings
"""

from reencoder.stage.base import FaultSignal, TranscodeStageAdapter
from reencoder.stage.unit_ring import ProducedUnit, UnitRing

__all__ = [
    "FaultSignal",
    "ProducedUnit",
    "TranscodeStageAdapter",
    "UnitRing",
]
