"""
Bridge between the transcode stage and downstream consumers.

- OutputBridge: one feeder thread per attached consumer
- Consumer / StreamConsumer: downstream sinks
"""

from reencoder.bridge.consumers import Consumer, StreamConsumer
from reencoder.bridge.output_bridge import ConsumerHandle, OutputBridge

__all__ = [
    "Consumer",
    "ConsumerHandle",
    "OutputBridge",
    "StreamConsumer",
]
