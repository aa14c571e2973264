"""Remote write (v1) payload decoding.

Payloads are snappy block-compressed ``prometheus.WriteRequest`` protobuf
messages. The message classes are built from a descriptor at import time
so no generated ``_pb2`` module is needed.
"""
from typing import Iterable, Mapping, Optional, Sequence, Tuple, Union
import logging

import snappy
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError as ProtobufDecodeError

from rwcompliance.errors import DecodeError
from rwcompliance.series import Batch, Label, LabelSet, Sample

logger = logging.getLogger(__name__)

SUPPORTED_ENCODING = "snappy"

_PACKAGE = "rwcompliance.prompb"
_FieldProto = descriptor_pb2.FieldDescriptorProto


def _add_field(message, name: str, number: int, field_type: int,
               repeated: bool = False, type_name: Optional[str] = None):
    field = message.field.add()
    field.name = name
    field.number = number
    field.type = field_type
    field.label = _FieldProto.LABEL_REPEATED if repeated else _FieldProto.LABEL_OPTIONAL
    if type_name:
        field.type_name = f".{_PACKAGE}.{type_name}"


def _build_schema():
    """Build the WriteRequest message classes (mirrors prompb/types.proto)."""
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = "rwcompliance/prompb/remote.proto"
    file_proto.package = _PACKAGE
    file_proto.syntax = "proto3"

    label = file_proto.message_type.add()
    label.name = "Label"
    _add_field(label, "name", 1, _FieldProto.TYPE_STRING)
    _add_field(label, "value", 2, _FieldProto.TYPE_STRING)

    sample = file_proto.message_type.add()
    sample.name = "Sample"
    _add_field(sample, "value", 1, _FieldProto.TYPE_DOUBLE)
    _add_field(sample, "timestamp", 2, _FieldProto.TYPE_INT64)

    series = file_proto.message_type.add()
    series.name = "TimeSeries"
    _add_field(series, "labels", 1, _FieldProto.TYPE_MESSAGE, repeated=True, type_name="Label")
    _add_field(series, "samples", 2, _FieldProto.TYPE_MESSAGE, repeated=True, type_name="Sample")

    # Metadata is parsed so that senders attaching it still decode; its
    # contents are not inspected.
    metadata = file_proto.message_type.add()
    metadata.name = "MetricMetadata"
    _add_field(metadata, "type", 1, _FieldProto.TYPE_INT32)
    _add_field(metadata, "metric_family_name", 2, _FieldProto.TYPE_STRING)
    _add_field(metadata, "help", 4, _FieldProto.TYPE_STRING)
    _add_field(metadata, "unit", 5, _FieldProto.TYPE_STRING)

    request = file_proto.message_type.add()
    request.name = "WriteRequest"
    _add_field(request, "timeseries", 1, _FieldProto.TYPE_MESSAGE, repeated=True, type_name="TimeSeries")
    _add_field(request, "metadata", 3, _FieldProto.TYPE_MESSAGE, repeated=True, type_name="MetricMetadata")

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())

    return tuple(
        message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{_PACKAGE}.{name}"))
        for name in ("Label", "Sample", "TimeSeries", "WriteRequest")
    )


LabelMessage, SampleMessage, TimeSeriesMessage, WriteRequest = _build_schema()


def decode_write_request(payload: bytes, content_encoding: Optional[str] = None) -> Batch:
    """
    Decode a compressed write request into a Batch.

    One Sample is produced per (series, point) pair, in wire order. Label
    order is kept exactly as sent; label invariants are not checked here.

    Args:
        payload: Raw request body
        content_encoding: Value of the Content-Encoding header, if any

    Raises:
        DecodeError: The encoding is unsupported, decompression failed, or
            the data is not a WriteRequest.
    """
    encoding = (content_encoding or SUPPORTED_ENCODING).strip().lower()
    if encoding != SUPPORTED_ENCODING:
        raise DecodeError(f"unsupported content encoding '{content_encoding}', expected '{SUPPORTED_ENCODING}'")

    try:
        raw = snappy.decompress(payload)
    except Exception as e:
        raise DecodeError(f"snappy decompression failed: {e}") from e

    request = WriteRequest()
    try:
        request.ParseFromString(raw)
    except ProtobufDecodeError as e:
        raise DecodeError(f"payload is not a valid WriteRequest: {e}") from e

    samples = []
    for series in request.timeseries:
        labels: LabelSet = tuple(Label(l.name, l.value) for l in series.labels)
        for point in series.samples:
            samples.append(Sample(labels, point.timestamp, point.value))

    logger.debug(f"Decoded {len(request.timeseries)} series into {len(samples)} samples")
    return Batch(tuple(samples))


SeriesLabels = Union[LabelSet, Sequence[Tuple[str, str]], Mapping[str, str]]


def encode_write_request(
    series: Iterable[Tuple[SeriesLabels, Iterable[Tuple[int, float]]]],
    compress: bool = True
) -> bytes:
    """
    Encode series into a write request payload.

    Labels are written in the order given (mappings in insertion order) so
    that unsorted or repeated labels can be produced deliberately.

    Args:
        series: (labels, [(timestamp_ms, value), ...]) pairs
        compress: Apply snappy block compression
    """
    request = WriteRequest()
    for labels, points in series:
        pairs = labels.items() if isinstance(labels, Mapping) else labels
        ts = request.timeseries.add()
        for name, value in pairs:
            ts.labels.add(name=name, value=value)
        for timestamp, value in points:
            ts.samples.add(timestamp=timestamp, value=value)

    data = request.SerializeToString()
    return snappy.compress(data) if compress else data
