"""
Downstream consumers of produced units.

A consumer is anything a feeder can forward units to. send() raises
ConsumerForwardError when the consumer is gone; the feeder then detaches it.
"""

import logging
from abc import ABC, abstractmethod
from typing import BinaryIO

from reencoder.errors import ConsumerForwardError
from reencoder.stage.unit_ring import ProducedUnit

logger = logging.getLogger(__name__)


class Consumer(ABC):
    """Base class for downstream sinks."""

    name: str = "consumer"

    @abstractmethod
    def send(self, unit: ProducedUnit) -> None:
        """
        Forward one unit.

        Raises:
            ConsumerForwardError: If the consumer can no longer accept data
        """

    def close(self) -> None:
        """
        Release the consumer. Called exactly once, after its feeder stopped.

        Subclasses should override if cleanup is needed.
        """
        pass


class StreamConsumer(Consumer):
    """
    Writes the raw byte stream, in order, with no framing.

    Used for direct output (stdout piped into another process).
    """

    def __init__(self, stream: BinaryIO, name: str = "stdout", close_stream: bool = False) -> None:
        self.stream = stream
        self.name = name
        self._close_stream = close_stream
        self.bytes_written = 0

    def send(self, unit: ProducedUnit) -> None:
        try:
            self.stream.write(unit.data)
            self.stream.flush()
        except (OSError, ValueError) as e:
            # BrokenPipeError when the reader went away, ValueError when closed
            raise ConsumerForwardError(f"{self.name}: {e}") from e
        self.bytes_written += len(unit.data)

    def close(self) -> None:
        if not self._close_stream:
            return
        try:
            self.stream.close()
        except OSError as e:
            logger.debug(f"Error closing {self.name}: {e}")
