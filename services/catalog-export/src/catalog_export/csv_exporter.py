"""
CSV serialization and gzip compression of export records.
"""

import csv
import gzip
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from catalog_export.logging_config import log_execution_time
from catalog_export.models import ExportRecord, join_list_cell
from catalog_export.transformer import normalize_fields

logger = logging.getLogger(__name__)

CHUNK_SIZE = 100
COMPRESSION_LEVEL = 6


@dataclass
class CompressionStats:
    record_count: int = 0
    original_size: int = 0
    compressed_size: int = 0

    @property
    def savings_percent(self) -> float:
        if not self.original_size:
            return 0.0
        return round((1 - self.compressed_size / self.original_size) * 100, 2)

    def to_dict(self) -> dict:
        return {
            "recordCount": self.record_count,
            "originalSize": self.original_size,
            "compressedSize": self.compressed_size,
            "savingsPercent": self.savings_percent,
        }


@dataclass
class CsvExport:
    """Serialized CSV: gzip bytes for transparent-compression backends plus the plain text."""
    content: bytes
    csv_text: str
    fields: list[str] = field(default_factory=list)
    stats: CompressionStats = field(default_factory=CompressionStats)

    @property
    def csv_bytes(self) -> bytes:
        return self.csv_text.encode("utf-8")


class CsvExporter:
    """Writes ExportRecords as RFC 4180 CSV, compressing in fixed-size chunks."""

    def __init__(self, chunk_size: int = CHUNK_SIZE, compression_level: int = COMPRESSION_LEVEL):
        self.chunk_size = chunk_size
        self.compression_level = compression_level

    @log_execution_time(logger)
    def export(self, records: list[ExportRecord], fields: Optional[list[str]] = None) -> CsvExport:
        """
        Serialize ``records`` with a header row of ``fields``.

        An empty record list yields a header-only file.
        """
        fields = normalize_fields(fields)
        text_parts: list[str] = []
        buffer = io.BytesIO()

        with gzip.GzipFile(fileobj=buffer, mode="wb", compresslevel=self.compression_level, mtime=0) as gz:
            header = self._render_rows([fields])
            text_parts.append(header)
            gz.write(header.encode("utf-8"))

            for start in range(0, len(records), self.chunk_size):
                chunk = records[start:start + self.chunk_size]
                rows = ([format_value(record.value(name)) for name in fields] for record in chunk)
                text = self._render_rows(rows)
                text_parts.append(text)
                gz.write(text.encode("utf-8"))

        csv_text = "".join(text_parts)
        content = buffer.getvalue()
        stats = CompressionStats(
            record_count=len(records),
            original_size=len(csv_text.encode("utf-8")),
            compressed_size=len(content),
        )

        logger.info(
            f"CSV export generated with {len(records)} records",
            extra={"metrics": stats.to_dict()},
        )
        return CsvExport(content=content, csv_text=csv_text, fields=fields, stats=stats)

    @staticmethod
    def _render_rows(rows: Iterable[list[str]]) -> str:
        out = io.StringIO()
        writer = csv.writer(out, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
        writer.writerows(rows)
        return out.getvalue()


def format_value(value: Any) -> str:
    """Render one cell: lists pipe-joined with escaping, None empty, integral floats without '.0'."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (list, tuple)):
        return join_list_cell([format_value(v) for v in value])
    return str(value)
