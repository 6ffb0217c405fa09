from __future__ import annotations

import csv
from dataclasses import dataclass
import hashlib
import io
from itertools import islice
import json
import tempfile
from typing import IO, Any, Iterable, Iterator

from curation.core.config import settings
from curation.core.errors import MalformedUpload, UnsupportedFormat
from curation.models import SourceFormat


@dataclass(slots=True)
class SpooledUpload:
    file: IO[bytes]
    fingerprint: str
    byte_size: int

    def rewind(self) -> None:
        self.file.seek(0)

    def close(self) -> None:
        self.file.close()


@dataclass(slots=True)
class MalformedRecord:
    detail: str


@dataclass(slots=True)
class RecordBatch:
    index: int
    start: int
    records: list[Any]

    @property
    def end(self) -> int:
        return self.start + len(self.records) - 1

    @property
    def record_range(self) -> tuple[int, int]:
        return (self.start, self.end)


def parse_source_format(value: str | SourceFormat | None) -> SourceFormat:
    if isinstance(value, SourceFormat):
        return value
    normalized = (value or "").strip().lower().lstrip(".")
    if normalized in {"jsonl", "ndjson"}:
        normalized = "json"
    try:
        return SourceFormat(normalized)
    except ValueError as error:
        raise UnsupportedFormat(f"unsupported upload format: {value!r}") from error


def spool_upload(stream: IO[bytes] | bytes, *, chunk_size: int | None = None) -> SpooledUpload:
    size = max(1024, chunk_size or settings.INGEST_READ_CHUNK_BYTES)
    spool = tempfile.SpooledTemporaryFile(max_size=settings.INGEST_SPOOL_MAX_BYTES)
    digest = hashlib.sha256()
    total = 0
    source = io.BytesIO(stream) if isinstance(stream, (bytes, bytearray)) else stream
    while True:
        chunk = source.read(size)
        if not chunk:
            break
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        digest.update(chunk)
        spool.write(chunk)
        total += len(chunk)
    spool.seek(0)
    return SpooledUpload(file=spool, fingerprint=digest.hexdigest(), byte_size=total)


def _text_reader(fileobj: IO[bytes]) -> io.TextIOWrapper:
    return io.TextIOWrapper(fileobj, encoding="utf-8-sig", newline="")


def _iter_csv(fileobj: IO[bytes]) -> Iterator[dict[str, Any]]:
    reader_io = _text_reader(fileobj)
    try:
        reader = csv.DictReader(reader_io)
        if not reader.fieldnames:
            return
        try:
            for row in reader:
                record = {str(key).strip(): value for key, value in row.items() if key is not None}
                if None in row:
                    record["__overflow__"] = row[None]
                if not any((value or "").strip() for value in record.values() if isinstance(value, str)):
                    continue
                yield record
        except (csv.Error, UnicodeDecodeError) as error:
            raise MalformedUpload(f"CSV parse error near line {reader.line_num}: {error}") from error
    finally:
        reader_io.detach()


def _iter_json_array(reader_io: io.TextIOWrapper, chunk_chars: int) -> Iterator[Any]:
    decoder = json.JSONDecoder()
    buffer = ""
    pos = 0
    eof = False
    opened = False
    expect_value = True

    def fill() -> bool:
        nonlocal buffer, pos, eof
        chunk = reader_io.read(chunk_chars)
        if not chunk:
            eof = True
            return False
        buffer = buffer[pos:] + chunk
        pos = 0
        return True

    while True:
        while pos < len(buffer) and buffer[pos].isspace():
            pos += 1
        if pos >= len(buffer):
            if eof or not fill():
                raise MalformedUpload("JSON array is not terminated")
            continue

        char = buffer[pos]
        if not opened:
            if char != "[":
                raise MalformedUpload("JSON upload must be an array of records or JSON lines")
            opened = True
            pos += 1
            continue
        if char == "]":
            return
        if char == ",":
            if expect_value:
                raise MalformedUpload("unexpected ',' in JSON array")
            expect_value = True
            pos += 1
            continue
        if not expect_value:
            raise MalformedUpload(f"expected ',' or ']' in JSON array, found {char!r}")

        try:
            value, end = decoder.raw_decode(buffer, pos)
        except json.JSONDecodeError as error:
            if eof or not fill():
                raise MalformedUpload(f"JSON parse error: {error.msg}") from error
            continue
        if end >= len(buffer) and not eof:
            # a trailing scalar may continue in the next chunk
            if fill():
                continue
        pos = end
        expect_value = False
        yield value


def _iter_json_lines(reader_io: io.TextIOWrapper) -> Iterator[Any]:
    for line_number, line in enumerate(reader_io, start=1):
        text = line.strip()
        if not text:
            continue
        try:
            yield json.loads(text)
        except ValueError as error:
            yield MalformedRecord(detail=f"line {line_number}: {error}")


def _iter_json(fileobj: IO[bytes], chunk_chars: int) -> Iterator[Any]:
    reader_io = _text_reader(fileobj)
    try:
        first = ""
        while True:
            char = reader_io.read(1)
            if not char:
                return
            if not char.isspace():
                first = char
                break
        reader_io.seek(0)
        if first == "[":
            yield from _iter_json_array(reader_io, chunk_chars)
        else:
            yield from _iter_json_lines(reader_io)
    except UnicodeDecodeError as error:
        raise MalformedUpload(f"upload is not valid UTF-8: {error}") from error
    finally:
        reader_io.detach()


def iter_records(
    fileobj: IO[bytes],
    source_format: str | SourceFormat,
    *,
    chunk_chars: int | None = None,
) -> Iterator[Any]:
    fmt = parse_source_format(source_format)
    if fmt == SourceFormat.csv:
        return _iter_csv(fileobj)
    return _iter_json(fileobj, max(64, chunk_chars or settings.INGEST_READ_CHUNK_BYTES))


def iter_batches(records: Iterable[Any], batch_size: int) -> Iterator[RecordBatch]:
    size = max(1, batch_size)
    iterator = iter(records)
    index = 0
    start = 1
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield RecordBatch(index=index, start=start, records=chunk)
        index += 1
        start += len(chunk)
