"""Problematic event batch decoder.

The backend serves batches as protobuf::

    message ProblematicEvent {
        bytes secretKey = 1;
        int64 startTime = 2;   // milliseconds since epoch
        int64 endTime = 3;     // milliseconds since epoch
        bytes message = 4;
    }
    message ProblematicEventWrapper {
        repeated ProblematicEvent events = 1;
    }

The message classes are built at import time from a descriptor, so no
generated ``_pb2`` module is needed.  Start and end times are divided by the
configured ``time_divisor`` (1000) with integer division to get epoch seconds,
matching the existing backend.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError as ProtobufDecodeError

from notifyme.exposure.base import ProblematicEventRecord
from notifyme.exposure.config_loader import ExposureConfig, get_exposure_config
from notifyme.exposure.errors import DecodeError

logger = logging.getLogger("notifyme.exposure.decoder")

_PACKAGE = "notifyme.exposure"
_FieldProto = descriptor_pb2.FieldDescriptorProto


def _build_message_classes() -> tuple[type, type]:
    """Register the wire schema in a private pool and return its classes."""
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="notifyme/exposure/problematic_events.proto",
        package=_PACKAGE,
        syntax="proto3",
    )

    event = file_proto.message_type.add(name="ProblematicEvent")
    event.field.add(
        name="secretKey", number=1,
        type=_FieldProto.TYPE_BYTES, label=_FieldProto.LABEL_OPTIONAL,
    )
    event.field.add(
        name="startTime", number=2,
        type=_FieldProto.TYPE_INT64, label=_FieldProto.LABEL_OPTIONAL,
    )
    event.field.add(
        name="endTime", number=3,
        type=_FieldProto.TYPE_INT64, label=_FieldProto.LABEL_OPTIONAL,
    )
    event.field.add(
        name="message", number=4,
        type=_FieldProto.TYPE_BYTES, label=_FieldProto.LABEL_OPTIONAL,
    )

    wrapper = file_proto.message_type.add(name="ProblematicEventWrapper")
    wrapper.field.add(
        name="events", number=1,
        type=_FieldProto.TYPE_MESSAGE, label=_FieldProto.LABEL_REPEATED,
        type_name=f".{_PACKAGE}.ProblematicEvent",
    )

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    event_cls = message_factory.GetMessageClass(
        pool.FindMessageTypeByName(f"{_PACKAGE}.ProblematicEvent")
    )
    wrapper_cls = message_factory.GetMessageClass(
        pool.FindMessageTypeByName(f"{_PACKAGE}.ProblematicEventWrapper")
    )
    return event_cls, wrapper_cls


ProblematicEvent, ProblematicEventWrapper = _build_message_classes()


class EventDecoder:
    """Turn a raw backend batch into ProblematicEventRecords.

    Decoding is all-or-nothing: any malformed entry rejects the whole batch.

    Usage::

        decoder = EventDecoder()
        events = decoder.decode(raw_batch)
    """

    def __init__(self, config: ExposureConfig | None = None) -> None:
        self._config = config or get_exposure_config()

    @property
    def time_divisor(self) -> int:
        return self._config.decoder.time_divisor

    def decode(self, raw: bytes) -> list[ProblematicEventRecord]:
        """Parse a serialized ProblematicEventWrapper.

        Args:
            raw: Response body from the backend.

        Returns:
            Decoded events in wire order.  An empty body is an empty batch.

        Raises:
            DecodeError: If the container is malformed or an entry has an
                         invalid time window.
        """
        wrapper = ProblematicEventWrapper()
        try:
            wrapper.ParseFromString(bytes(raw))
        except (ProtobufDecodeError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed problematic event batch: {exc}") from exc

        records: list[ProblematicEventRecord] = []
        for index, entry in enumerate(wrapper.events):
            start = self._to_datetime(entry.startTime, index, "startTime")
            end = self._to_datetime(entry.endTime, index, "endTime")
            if end < start:
                raise DecodeError(
                    f"Event #{index} ends before it starts "
                    f"({end.isoformat()} < {start.isoformat()})"
                )
            records.append(
                ProblematicEventRecord(
                    private_key=bytes(entry.secretKey),
                    window_start=start,
                    window_end=end,
                    message=bytes(entry.message),
                )
            )

        logger.debug("Decoded %d problematic events (%d bytes)", len(records), len(raw))
        return records

    def _to_datetime(self, wire_value: int, index: int, name: str) -> datetime:
        seconds = wire_value // self.time_divisor
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise DecodeError(f"Event #{index} has an invalid {name}: {wire_value}") from exc

    def encode(self, records: Iterable[ProblematicEventRecord]) -> bytes:
        """Serialize records into the wire container (inverse of ``decode``)."""
        return encode_events(records, time_divisor=self.time_divisor)


def encode_events(
    records: Iterable[ProblematicEventRecord], time_divisor: int = 1000
) -> bytes:
    """Serialize records as a ProblematicEventWrapper.

    Times are written in wire milliseconds, so sub-second precision is lost.
    """
    wrapper = ProblematicEventWrapper()
    for record in records:
        entry = wrapper.events.add()
        entry.secretKey = record.private_key
        entry.startTime = int(record.window_start.timestamp()) * time_divisor
        entry.endTime = int(record.window_end.timestamp()) * time_divisor
        entry.message = record.message
    return wrapper.SerializeToString()
