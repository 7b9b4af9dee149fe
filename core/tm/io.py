"""
Translation Memory Import/Export Module

Supports:
- TMX 1.4 (Translation Memory eXchange), streamed unit by unit
- CSV (export only, simple format for spreadsheets)

Engine metadata travels as <prop> elements:
    x-quality-score   decimal, omitted when unrated
    x-usage-count     integer
    x-game-context    free text, omitted when absent
    x-provider-id     free text, omitted when absent
Unknown props are ignored on import.
"""

import csv
import io
import threading
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, TextIO, Tuple, Union
import logging

from .exceptions import TMFormatError, TMValidationError
from .gateway import EntryData, EntryFilter, TMGateway
from .models import TMEntry, utcnow
from .normalizer import normalize, strip_invalid_xml
from .schemas import ConflictPolicy, ImportErrorDetail, ImportReport

logger = logging.getLogger(__name__)

XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"
TMX_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
MAX_ERROR_DETAILS = 100

PROP_QUALITY = "x-quality-score"
PROP_USAGE = "x-usage-count"
PROP_CONTEXT = "x-game-context"
PROP_PROVIDER = "x-provider-id"

ProgressCallback = Callable[[int, int], None]


class CancellationToken:
    """Cooperative cancellation, checked between records."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(TMX_DATE_FORMAT) if value else None


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, TMX_DATE_FORMAT)
    except ValueError:
        # Invalid date format
        return None


class TMXCodec:
    """Export/import TM entries as TMX 1.4."""

    def __init__(
        self,
        repository: TMGateway,
        tool_name: str = "TM Engine",
        tool_version: str = "1.0",
    ):
        self.repository = repository
        self.tool_name = tool_name
        self.tool_version = tool_version

    # ==================== EXPORT ====================

    def export(
        self,
        sink: Union[str, Path, TextIO],
        entries: Optional[Iterable[TMEntry]] = None,
        predicate: Optional[EntryFilter] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        source_language: Optional[str] = None,
    ) -> int:
        """
        Stream entries to TMX, one <tu> per entry.

        Args:
            sink: File path or text stream
            entries: Entries to write; defaults to the store filtered by predicate
            predicate: Store filter when entries is not given
            on_progress: Called with (done, total) after each unit
            cancel_token: Stops between units; the document is still closed
            source_language: Header srclang, "*all*" when omitted

        Returns:
            Number of units written
        """
        if entries is None:
            total = self.repository.count(predicate)
            entries = self.repository.iter_entries(predicate)
        else:
            entries = list(entries)
            total = len(entries)

        if isinstance(sink, (str, Path)):
            Path(sink).parent.mkdir(parents=True, exist_ok=True)
            with open(sink, "w", encoding="utf-8") as stream:
                return self._write(stream, entries, total, on_progress, cancel_token, source_language)
        return self._write(sink, entries, total, on_progress, cancel_token, source_language)

    def export_string(self, entries: Optional[Iterable[TMEntry]] = None, **kwargs) -> str:
        """Export to an in-memory TMX string."""
        buffer = io.StringIO()
        self.export(buffer, entries=entries, **kwargs)
        return buffer.getvalue()

    def _write(self, stream, entries, total, on_progress, cancel_token, source_language) -> int:
        header = ET.Element("header")
        header.set("creationtool", self.tool_name)
        header.set("creationtoolversion", self.tool_version)
        header.set("datatype", "plaintext")
        header.set("segtype", "sentence")
        header.set("adminlang", "en")
        header.set("srclang", source_language or "*all*")
        header.set("o-tmf", self.tool_name)
        header.set("creationdate", _format_date(utcnow()))

        stream.write('<?xml version="1.0" encoding="UTF-8"?>\n')
        stream.write('<tmx version="1.4">\n')
        stream.write(ET.tostring(header, encoding="unicode"))
        stream.write("\n<body>\n")

        written = 0
        for entry in entries:
            if cancel_token is not None and cancel_token.is_cancelled:
                logger.info(f"TMX export cancelled after {written}/{total} units")
                break
            stream.write(ET.tostring(self._build_unit(entry), encoding="unicode"))
            stream.write("\n")
            written += 1
            if on_progress:
                on_progress(written, total)

        stream.write("</body>\n</tmx>\n")
        logger.info(f"Exported {written} TM entries to TMX")
        return written

    def _build_unit(self, entry: TMEntry) -> ET.Element:
        tu = ET.Element("tu")
        tu.set("tuid", entry.id)
        for attr, value in (
            ("creationdate", entry.created_at),
            ("changedate", entry.updated_at),
            ("lastusagedate", entry.last_used_at),
        ):
            if value:
                tu.set(attr, _format_date(value))
        tu.set("usagecount", str(entry.usage_count))

        props = [
            (PROP_QUALITY, repr(float(entry.quality_score)) if entry.quality_score is not None else None),
            (PROP_USAGE, str(entry.usage_count)),
            (PROP_CONTEXT, entry.domain_context),
            (PROP_PROVIDER, entry.provider_id),
        ]
        for prop_type, value in props:
            if value is None:
                continue
            prop = ET.SubElement(tu, "prop", type=prop_type)
            prop.text = strip_invalid_xml(value)

        for lang, text in (
            (entry.source_language, entry.source_text),
            (entry.target_language, entry.target_text),
        ):
            tuv = ET.SubElement(tu, "tuv")
            tuv.set(XML_LANG, lang)
            seg = ET.SubElement(tuv, "seg")
            seg.text = strip_invalid_xml(text)
        return tu

    # ==================== IMPORT ====================

    def import_(
        self,
        source: Union[str, Path, bytes, TextIO],
        policy: ConflictPolicy = ConflictPolicy.SKIP_EXISTING,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        merge_usage_on_skip: bool = False,
    ) -> ImportReport:
        """
        Import a TMX document.

        A document that does not parse raises TMFormatError before anything
        is written. Bad units are counted in the report and skipped. Each
        unit commits on its own, so a cancelled import keeps its progress.

        Args:
            source: Path, XML string/bytes or stream
            policy: What to do with entries that already exist
            on_progress: Called with (done, total) after each unit
            cancel_token: Checked before each unit
            merge_usage_on_skip: Add usage counts to skipped entries

        Returns:
            ImportReport
        """
        root = self._parse_document(source)

        header = root.find("header")
        srclang = header.get("srclang") if header is not None else None
        body = root.find("body")
        if body is None:
            raise TMFormatError("TMX document has no <body>")

        units = body.findall("tu")
        report = ImportReport(total=len(units))

        for index, tu in enumerate(units):
            if cancel_token is not None and cancel_token.is_cancelled:
                report.cancelled = True
                logger.info(f"TMX import cancelled at unit {index}/{report.total}")
                break
            try:
                data = self._parse_unit(tu, srclang, index)
                self._apply(data, policy, merge_usage_on_skip, report)
            except (TMFormatError, TMValidationError) as e:
                report.errors += 1
                if len(report.error_details) < MAX_ERROR_DETAILS:
                    report.error_details.append(ImportErrorDetail(index=index, message=str(e)))
                logger.warning(f"Skipping TMX unit {index}: {e}")
            if on_progress:
                on_progress(index + 1, report.total)

        logger.info(
            f"Imported TMX: {report.imported} new, {report.updated} updated, "
            f"{report.skipped} skipped, {report.errors} errors of {report.total}"
        )
        return report

    def _parse_document(self, source) -> ET.Element:
        try:
            if isinstance(source, Path):
                root = ET.parse(source).getroot()
            elif isinstance(source, bytes):
                root = ET.fromstring(source)
            elif isinstance(source, str):
                if source.lstrip().startswith("<"):
                    root = ET.fromstring(source)
                else:
                    root = ET.parse(source).getroot()
            else:
                root = ET.parse(source).getroot()
        except ET.ParseError as e:
            logger.error(f"TMX parse error: {e}")
            raise TMFormatError(f"Invalid TMX format: {e}") from e
        except OSError as e:
            raise TMFormatError(f"Cannot read TMX source: {e}") from e

        if root.tag != "tmx":
            raise TMFormatError(f"Root element is <{root.tag}>, expected <tmx>")
        return root

    def _parse_unit(self, tu: ET.Element, srclang: Optional[str], index: int) -> EntryData:
        variants = []
        for tuv in tu.findall("tuv"):
            lang = tuv.get(XML_LANG) or tuv.get("lang")
            seg = tuv.find("seg")
            text = "".join(seg.itertext()) if seg is not None else ""
            variants.append((lang, text))

        if len(variants) != 2:
            raise TMFormatError(f"expected exactly two <tuv>, found {len(variants)}", index)
        if any(not lang for lang, _ in variants):
            raise TMFormatError("<tuv> without xml:lang", index)

        source, target = self._split_variants(variants, srclang)
        if not normalize(source[1]):
            raise TMFormatError("source text is empty", index)
        if not normalize(target[1]):
            raise TMFormatError("target text is empty", index)

        props = {prop.get("type"): (prop.text or "").strip() for prop in tu.findall("prop")}

        quality = None
        if props.get(PROP_QUALITY):
            try:
                quality = float(props[PROP_QUALITY])
            except ValueError:
                raise TMFormatError(f"bad {PROP_QUALITY}: {props[PROP_QUALITY]!r}", index)
            if not 0.0 <= quality <= 1.0:
                raise TMFormatError(f"{PROP_QUALITY} out of range: {quality}", index)

        usage = 1
        raw_usage = props.get(PROP_USAGE) or tu.get("usagecount")
        if raw_usage:
            try:
                usage = int(raw_usage)
            except ValueError:
                raise TMFormatError(f"bad {PROP_USAGE}: {raw_usage!r}", index)
            if usage < 1:
                raise TMFormatError(f"{PROP_USAGE} must be >= 1: {usage}", index)

        created_at = _parse_date(tu.get("creationdate"))
        return EntryData(
            source_text=source[1],
            target_text=target[1],
            source_language=source[0],
            target_language=target[0],
            domain_context=props.get(PROP_CONTEXT) or None,
            provider_id=props.get(PROP_PROVIDER) or None,
            quality_score=quality,
            usage_count=usage,
            created_at=created_at,
            last_used_at=_parse_date(tu.get("lastusagedate")) or created_at,
        )

    @staticmethod
    def _split_variants(variants, srclang: Optional[str]) -> Tuple[tuple, tuple]:
        """Source is the variant matching srclang, else the first one."""
        if srclang and srclang != "*all*":
            wanted = srclang.lower()
            for i, (lang, _) in enumerate(variants):
                if lang.lower() == wanted:
                    return variants[i], variants[1 - i]
        return variants[0], variants[1]

    def _apply(
        self,
        data: EntryData,
        policy: ConflictPolicy,
        merge_usage_on_skip: bool,
        report: ImportReport,
    ) -> None:
        _, source_hash = self.repository.hash_source(data.source_text)
        existing = self.repository.find_identity(
            source_hash, data.target_language, data.domain_context
        )

        if existing is None:
            self.repository.insert_or_merge(data)
            report.imported += 1
        elif policy == ConflictPolicy.OVERWRITE:
            self.repository.update_entry(
                existing.id,
                target_text=data.target_text,
                quality_score=data.quality_score,
                provider_id=data.provider_id,
                usage_count=existing.usage_count + data.usage_count,
            )
            report.updated += 1
        else:
            if merge_usage_on_skip:
                self.repository.update_entry(
                    existing.id,
                    usage_count=existing.usage_count + data.usage_count,
                )
            report.skipped += 1


# ==================== CSV ====================

CSV_FIELDS = [
    "id", "source_text", "target_text", "source_language", "target_language",
    "domain_context", "provider_id", "quality_score", "usage_count",
    "created_at", "last_used_at", "updated_at",
]


def export_csv(entries: Iterable[TMEntry], sink: Union[str, Path, TextIO]) -> int:
    """Write entries as a flat CSV; returns the row count."""
    if isinstance(sink, (str, Path)):
        with open(sink, "w", encoding="utf-8", newline="") as stream:
            return export_csv(entries, stream)

    writer = csv.DictWriter(sink, fieldnames=CSV_FIELDS, extrasaction="ignore")
    writer.writeheader()
    count = 0
    for entry in entries:
        row = entry.to_dict()
        writer.writerow({k: "" if row.get(k) is None else row[k] for k in CSV_FIELDS})
        count += 1
    logger.info(f"Exported {count} TM entries to CSV")
    return count
