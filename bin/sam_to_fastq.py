#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic>=2",
#     "pysam",
# ]
# ///

from __future__ import annotations

import argparse
import gzip
import re
import sys
import warnings
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Generic, NamedTuple, TextIO, TypeVar

import pysam
from loguru import logger
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic.dataclasses import dataclass as pydantic_dataclass

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Emit a progress line after this many input records
PROGRESS_EVERY: int = 1_000_000

PHRED_OFFSET = 33
MAX_PHRED = 93  # highest quality representable in Phred+33 text

MASK_BASE = "N"
TAG_QUALITY_PLACEHOLDER = "~"
DEFAULT_TAG_SEPARATOR = ""

RG_TAG_CHOICES = ("PU", "ID")

_COMPLEMENT = str.maketrans("ACGTacgt", "TGCAtgca")

# Characters replaced with "_" when a header value becomes part of a file name
_UNSAFE_FILENAME_CHARS = re.compile(r"[\s!\"#$%&'()*/:;<=>?@\[\]\\^`{|}~]")

T = TypeVar("T")


# --------------------------------- ERRORS ---------------------------------- #


class SamToFastqError(Exception):
    """Base class for fatal conversion errors."""


class ConfigurationError(SamToFastqError):
    """Invalid or contradictory options, detected before any record is read."""


class MissingDestinationError(SamToFastqError):
    """A record needs an output that was never configured."""


class MateMismatchError(SamToFastqError):
    """Two records share a name but are not a first/second-of-pair couple."""


class MissingHeaderFieldError(SamToFastqError):
    """A read-group field needed to name an output is absent from the header."""


class MalformedRecordError(SamToFastqError):
    """A record lacks data the conversion needs (qualities, tags, clip point)."""


class OrphanMateWarning(UserWarning):
    """Paired records whose mate never showed up in the input."""


# ------------------------------- DATA TYPES -------------------------------- #


class ClipAction(Enum):
    """What to do with the bases past the clip point."""

    HARD_TRIM = auto()  # 'X': drop bases and qualities
    MASK_BASES = auto()  # 'N': replace bases with N, keep qualities
    MASK_QUALITIES = auto()  # integer: replace qualities, keep bases

    @staticmethod
    def parse(action: str) -> ClipAction:
        """Classify a CLIPPING_ACTION value. Raises ValueError on anything else."""
        match action.upper():
            case "X":
                return ClipAction.HARD_TRIM
            case "N":
                return ClipAction.MASK_BASES
            case _:
                int(action)
                return ClipAction.MASK_QUALITIES


class ReadGroup(NamedTuple):
    """The @RG header fields used for routing and file naming."""

    id: str
    platform_unit: str | None = None

    def tag_value(self, rg_tag: str) -> str | None:
        """Value of the PU or ID field, whichever `rg_tag` selects."""
        return self.platform_unit if rg_tag == "PU" else self.id


class TagGroup(NamedTuple):
    """One SEQUENCE_TAG_GROUP entry with its quality tags and separator."""

    sequence_tags: tuple[str, ...]
    quality_tags: tuple[str, ...] | None
    separator: str
    label: str  # file name stem, e.g. "CR_CB" for "CR,CB"


@dataclass(frozen=True)
class FastqRecord:
    """One 4-line FASTQ record. The '+' line is always left empty."""

    header: str
    sequence: str
    quality: str

    def __post_init__(self) -> None:
        if len(self.sequence) != len(self.quality):
            msg = (
                f"Sequence/quality length mismatch for '{self.header}': "
                f"seq={len(self.sequence)}, qual={len(self.quality)}"
            )
            logger.error(msg)
            raise MalformedRecordError(msg)

    def format(self) -> str:
        return f"@{self.header}\n{self.sequence}\n+\n{self.quality}\n"


@dataclass
class ConversionStats:
    """Counters for one pass over the input."""

    records_seen: int = 0
    skipped_non_primary: int = 0
    skipped_non_pf: int = 0
    unpaired_written: int = 0
    pairs_written: int = 0
    tag_records_written: int = 0
    orphan_mates: int = 0


# ----------------------------- CONFIGURATION ------------------------------- #


@pydantic_dataclass(frozen=True)
class ConversionConfig:
    """
    Every option that shapes a run, validated once and never mutated.

    Output layout is one of two modes:
    - single destination: `fastq` (plus optional `second_end_fastq`,
      `unpaired_fastq`, or `interleave`)
    - per read group: `output_per_rg` with `output_dir` and `rg_tag`
    """

    fastq: Path | None = None
    second_end_fastq: Path | None = None
    unpaired_fastq: Path | None = None
    output_per_rg: bool = False
    compress_outputs_per_rg: bool = False
    rg_tag: str = "PU"
    output_dir: Path | None = None
    re_reverse: bool = True
    interleave: bool = False
    include_non_pf_reads: bool = False
    include_non_primary_alignments: bool = False
    clipping_attribute: str | None = None
    clipping_action: str | None = None
    clipping_min_length: int = Field(default=0, ge=0)
    read1_trim: int = Field(default=0, ge=0)
    read1_max_bases_to_write: int | None = Field(default=None, ge=0)
    read2_trim: int = Field(default=0, ge=0)
    read2_max_bases_to_write: int | None = Field(default=None, ge=0)
    quality: int | None = None
    sequence_tag_group: tuple[str, ...] = ()
    quality_tag_group: tuple[str, ...] = ()
    tag_group_separator: tuple[str, ...] = ()
    compress_outputs_per_tag_group: bool = False

    @field_validator("rg_tag")
    @classmethod
    def normalize_rg_tag(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("clipping_action")
    @classmethod
    def normalize_clipping_action(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v.upper() if v.upper() in {"X", "N"} else v

    @model_validator(mode="after")
    def check_option_combinations(self) -> ConversionConfig:
        errors = self._option_errors()
        if errors:
            raise ValueError("; ".join(errors))
        return self

    def _option_errors(self) -> list[str]:  # noqa: C901, PLR0912
        errors: list[str] = []

        single_outputs = (self.fastq, self.second_end_fastq, self.unpaired_fastq)
        if self.output_per_rg:
            if any(p is not None for p in single_outputs):
                errors.append(
                    "FASTQ, SECOND_END_FASTQ and UNPAIRED_FASTQ cannot be combined with OUTPUT_PER_RG"
                )
            if self.output_dir is None:
                errors.append("If OUTPUT_PER_RG is true, then OUTPUT_DIR should be set")
            if self.rg_tag not in RG_TAG_CHOICES:
                errors.append(f"RG_TAG must be: PU or ID, got {self.rg_tag!r}")
        else:
            if self.fastq is None:
                errors.append("FASTQ is required unless OUTPUT_PER_RG is set")
            if self.compress_outputs_per_rg:
                errors.append("COMPRESS_OUTPUTS_PER_RG requires OUTPUT_PER_RG")

        if self.interleave and self.second_end_fastq is not None:
            errors.append("Cannot set INTERLEAVE to true and pass in a SECOND_END_FASTQ")
        if self.unpaired_fastq is not None and self.second_end_fastq is None:
            errors.append(
                "UNPAIRED_FASTQ may only be set when also emitting read1 and read2 fastqs "
                "(so SECOND_END_FASTQ must also be set)"
            )

        if (self.clipping_attribute is None) != (self.clipping_action is None):
            errors.append("Both or neither of CLIPPING_ATTRIBUTE and CLIPPING_ACTION should be set")
        if self.clipping_action is not None:
            try:
                action = ClipAction.parse(self.clipping_action)
            except ValueError:
                errors.append("CLIPPING_ACTION must be one of: N, X, or an integer")
            else:
                if action is ClipAction.MASK_QUALITIES and not (
                    0 <= int(self.clipping_action) <= MAX_PHRED
                ):
                    errors.append(f"CLIPPING_ACTION quality must be within 0..{MAX_PHRED}")

        n_groups = len(self.sequence_tag_group)
        if n_groups == 0:
            if self.quality_tag_group or self.tag_group_separator:
                errors.append(
                    "QUALITY_TAG_GROUP and TAG_GROUP_SEPARATOR require SEQUENCE_TAG_GROUP"
                )
            if self.compress_outputs_per_tag_group:
                errors.append("COMPRESS_OUTPUTS_PER_TAG_GROUP requires SEQUENCE_TAG_GROUP")
        if self.quality_tag_group and len(self.quality_tag_group) != n_groups:
            errors.append(
                "QUALITY_TAG_GROUP size must be equal to SEQUENCE_TAG_GROUP or not specified at all"
            )
        elif self.quality_tag_group:
            for seq_option, qual_option in zip(self.sequence_tag_group, self.quality_tag_group):
                if len(_split_tag_names(seq_option)) != len(_split_tag_names(qual_option)):
                    errors.append(
                        f"QUALITY_TAG_GROUP '{qual_option}' must name as many tags as "
                        f"SEQUENCE_TAG_GROUP '{seq_option}'"
                    )
        if self.tag_group_separator and len(self.tag_group_separator) != n_groups:
            errors.append(
                "TAG_GROUP_SEPARATOR size must be equal to SEQUENCE_TAG_GROUP or not specified at all"
            )

        return errors

    @property
    def clip_action(self) -> ClipAction | None:
        if self.clipping_action is None:
            return None
        return ClipAction.parse(self.clipping_action)

    @property
    def clip_quality_char(self) -> str | None:
        """Phred+33 character used by quality-masking clips."""
        if self.clip_action is not ClipAction.MASK_QUALITIES:
            return None
        return chr(int(self.clipping_action) + PHRED_OFFSET)


def build_config(**options: object) -> ConversionConfig:
    """Validate `options` into a ConversionConfig, reporting every problem at once."""
    try:
        return ConversionConfig(**options)
    except ValidationError as err:
        problems = []
        for e in err.errors():
            loc = ".".join(str(part) for part in e["loc"])
            problems.append(f"{loc}: {e['msg']}" if loc else e["msg"])
        msg = "Invalid options: " + "; ".join(problems)
        logger.error(msg)
        raise ConfigurationError(msg) from err


def _split_tag_names(option: str) -> tuple[str, ...]:
    return tuple(name.strip() for name in option.strip().split(","))


def parse_tag_groups(config: ConversionConfig) -> list[TagGroup]:
    """Split the comma-separated tag group options once, up front."""
    groups = []
    for i, seq_option in enumerate(config.sequence_tag_group):
        quality_tags = (
            _split_tag_names(config.quality_tag_group[i]) if config.quality_tag_group else None
        )
        separator = (
            config.tag_group_separator[i] if config.tag_group_separator else DEFAULT_TAG_SEPARATOR
        )
        groups.append(
            TagGroup(
                sequence_tags=_split_tag_names(seq_option),
                quality_tags=quality_tags,
                separator=separator,
                label=seq_option.replace(",", "_"),
            )
        )
    return groups


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Route loguru to stderr at a level picked from the -v/-q counts.

    The default run reports only the final summary (SUCCESS). Each -v steps
    one level louder, each -q one level quieter:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ----------------------------- RECORD ACCESS ------------------------------- #


def _read_bases(read: pysam.AlignedSegment) -> str:
    return read.query_sequence or ""


def _read_quality_string(read: pysam.AlignedSegment) -> str:
    """Phred+33 qualities in stored orientation."""
    quals = read.query_qualities
    if quals is None:
        if not read.query_sequence:
            return ""
        msg = f"Read '{read.query_name}' has bases but no base qualities"
        logger.error(msg)
        raise MalformedRecordError(msg)
    return pysam.qualities_to_qualitystring(quals)


def _read_group_id(read: pysam.AlignedSegment) -> str | None:
    return read.get_tag("RG") if read.has_tag("RG") else None


def _clip_point(read: pysam.AlignedSegment, attribute: str) -> int | None:
    if not read.has_tag(attribute):
        return None
    value = read.get_tag(attribute)
    if not isinstance(value, int):
        msg = f"Clip attribute {attribute} of '{read.query_name}' is not an integer: {value!r}"
        logger.error(msg)
        raise MalformedRecordError(msg)
    return value


def _string_tag(read: pysam.AlignedSegment, tag: str) -> str:
    if not read.has_tag(tag):
        msg = f"Read '{read.query_name}' has no {tag} tag needed by a tag group"
        logger.error(msg)
        raise MalformedRecordError(msg)
    return str(read.get_tag(tag))


def read_groups_from_header(header: pysam.AlignmentHeader) -> list[ReadGroup]:
    """The @RG lines of `header`, in header order."""
    return [ReadGroup(rg["ID"], rg.get("PU")) for rg in header.to_dict().get("RG", [])]


# ------------------------------ MATE PAIRING ------------------------------- #


def assert_paired_mates(first: pysam.AlignedSegment, second: pysam.AlignedSegment) -> None:
    """Exactly one of the two records must be first-of-pair and the other second."""
    if not (
        (first.is_read1 and second.is_read2) or (second.is_read1 and first.is_read2)
    ):
        msg = f"Illegal mate state: {first.query_name}"
        logger.error(msg)
        raise MateMismatchError(msg)


class MateBuffer:
    """
    Holds the first-seen record of each paired read name until its mate
    arrives. Entries are removed as soon as the pair is complete, so whatever
    is left at the end of the input is an orphan.
    """

    def __init__(self) -> None:
        self._waiting: dict[str, pysam.AlignedSegment] = {}

    def add(
        self, read: pysam.AlignedSegment
    ) -> tuple[pysam.AlignedSegment, pysam.AlignedSegment] | None:
        """Store `read`, or return (read1, read2) if it completes a pair."""
        first = self._waiting.pop(read.query_name, None)
        if first is None:
            self._waiting[read.query_name] = read
            return None
        assert_paired_mates(first, read)
        return (read, first) if read.is_read1 else (first, read)

    def orphan_names(self) -> list[str]:
        return list(self._waiting)

    def __len__(self) -> int:
        return len(self._waiting)


# ---------------------------- READ TRANSFORMS ------------------------------ #


def reverse_complement(seq: str) -> str:
    """Reverse `seq` and swap A<->T, C<->G. Other symbols pass through."""
    return seq.translate(_COMPLEMENT)[::-1]


def clip(src: str, point: int, replacement: str | None, positive_strand: bool) -> str:  # noqa: FBT001
    """
    Apply a clip at 1-based `point` (the first clipped base in read order).

    Positive-strand reads lose their tail, negative-strand reads their head,
    since stored bases of a reverse read run 3'->5'. With `replacement`, the
    clipped positions are overwritten instead of removed.
    """
    length = len(src)
    point = min(max(point, 1), length + 1)
    clipped = length - point + 1
    kept = src[: point - 1] if positive_strand else src[clipped:]
    if replacement is None:
        return kept
    mask = replacement * clipped
    return kept + mask if positive_strand else mask + kept


def find_quality_trim_point(quals: Sequence[int], trim_qual: int) -> int:
    """
    BWA-style 3' quality trim: walk in from the end accumulating
    `trim_qual - q` and cut where that running deficit peaks. Returns the
    number of bases to keep.
    """
    length = len(quals)
    if trim_qual < 1 or length == 0:
        return 0
    score = 0
    max_score = 0
    trim_point = length
    for i in range(length - 1, -1, -1):
        score += trim_qual - quals[i]
        if score < 0:
            break
        if score > max_score:
            max_score = score
            trim_point = i
    return trim_point


def fastq_header(read_name: str, mate_number: int | None) -> str:
    return read_name if mate_number is None else f"{read_name}/{mate_number}"


def transform_record(
    read: pysam.AlignedSegment,
    mate_number: int | None,
    bases_to_trim: int,
    max_bases_to_write: int | None,
    config: ConversionConfig,
) -> FastqRecord:
    """
    Turn one alignment record into a FASTQ record. Stages, in order: attribute
    clipping, re-reversal of negative-strand reads, fixed 5' trim, quality
    trim (never below one base), and the maximum-length cap.
    """
    bases = _read_bases(read)
    quals = _read_quality_string(read)

    action = config.clip_action
    if action is not None:
        point = _clip_point(read, config.clipping_attribute)
        if point is not None and point < config.clipping_min_length:
            point = min(len(bases), config.clipping_min_length)
        if point is not None:
            positive = not read.is_reverse
            logger.trace(f"Clipping '{read.query_name}' at {point} ({action.name})")
            match action:
                case ClipAction.HARD_TRIM:
                    bases = clip(bases, point, None, positive)
                    quals = clip(quals, point, None, positive)
                case ClipAction.MASK_BASES:
                    bases = clip(bases, point, MASK_BASE, positive)
                case ClipAction.MASK_QUALITIES:
                    quals = clip(quals, point, config.clip_quality_char, positive)

    if config.re_reverse and read.is_reverse:
        bases = reverse_complement(bases)
        quals = quals[::-1]

    if bases_to_trim > 0:
        bases = bases[bases_to_trim:]
        quals = quals[bases_to_trim:]

    if config.quality is not None:
        phred = [ord(c) - PHRED_OFFSET for c in quals]
        keep = max(1, find_quality_trim_point(phred, config.quality))
        if keep < len(phred):
            bases = bases[:keep]
            quals = quals[:keep]

    if max_bases_to_write is not None and max_bases_to_write < len(bases):
        bases = bases[:max_bases_to_write]
        quals = quals[:max_bases_to_write]

    return FastqRecord(fastq_header(read.query_name, mate_number), bases, quals)


def build_tag_records(
    read: pysam.AlignedSegment,
    mate_number: int | None,
    tag_groups: Sequence[TagGroup],
) -> list[FastqRecord]:
    """One synthetic record per tag group, built from the read's tag values."""
    header = fastq_header(read.query_name, mate_number)
    records = []
    for group in tag_groups:
        sequence = group.separator.join(_string_tag(read, t) for t in group.sequence_tags)
        if group.quality_tags is None:
            quality = TAG_QUALITY_PLACEHOLDER * len(sequence)
        else:
            quality_sep = TAG_QUALITY_PLACEHOLDER * len(group.separator)
            quality = quality_sep.join(_string_tag(read, t) for t in group.quality_tags)
        records.append(FastqRecord(header, sequence, quality))
    return records


# ------------------------------ FASTQ OUTPUT ------------------------------- #


class Lazy(Generic[T]):
    """A value computed on first `get()` and remembered afterwards."""

    def __init__(self, factory: Callable[[], T]) -> None:
        self._factory = factory
        self._value: T | None = None
        self._initialized = False

    @classmethod
    def of(cls, value: T) -> Lazy[T]:
        lazy = cls(lambda: value)
        lazy.get()
        return lazy

    def get(self) -> T:
        if not self._initialized:
            self._value = self._factory()
            self._initialized = True
        return self._value

    @property
    def is_initialized(self) -> bool:
        return self._initialized


class FastqWriter:
    """Plain or gzip FASTQ output, picked by a '.gz' suffix on the path."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.key = self.path.resolve()
        self.records_written = 0
        self.closed = False
        opener = gzip.open if self.path.name.endswith(".gz") else open
        logger.debug(f"Opening for write: {self.path}")
        self._handle: TextIO = opener(self.path, "wt")

    def write(self, record: FastqRecord) -> None:
        self._handle.write(record.format())
        self.records_written += 1

    def close(self) -> None:
        if self.closed:
            msg = f"FASTQ writer for {self.path} closed twice"
            logger.error(msg)
            raise SamToFastqError(msg)
        self._handle.close()
        self.closed = True
        logger.debug(f"Closed {self.path} after {self.records_written} records")


class WriterRegistry:
    """
    Single owner of every open FASTQ writer, keyed by resolved destination.
    Asking twice for the same path yields the same writer, and `close_all`
    closes each destination once no matter how many roles share it.
    """

    def __init__(self, writer_factory: Callable[[Path], FastqWriter] = FastqWriter) -> None:
        self._factory = writer_factory
        self._writers: dict[Path, FastqWriter] = {}

    def open(self, path: Path) -> FastqWriter:
        key = Path(path).resolve()
        writer = self._writers.get(key)
        if writer is None:
            writer = self._factory(Path(path))
            self._writers[key] = writer
        return writer

    def close_all(self) -> int:
        closed = 0
        for writer in self._writers.values():
            if not writer.closed:
                writer.close()
                closed += 1
        return closed

    def __iter__(self) -> Iterator[FastqWriter]:
        return iter(self._writers.values())

    def __len__(self) -> int:
        return len(self._writers)


@dataclass
class WriterSet:
    """The writers one routing context sends records to."""

    first_of_pair: FastqWriter
    second_of_pair: Lazy[FastqWriter | None]
    unpaired: FastqWriter
    tag_writers: list[FastqWriter] = field(default_factory=list)

    def get_second_of_pair(self) -> FastqWriter | None:
        return self.second_of_pair.get()

    def writers(self) -> list[FastqWriter]:
        """Distinct destinations in use; a never-requested lazy writer is skipped."""
        candidates = [self.first_of_pair, self.unpaired, *self.tag_writers]
        if self.second_of_pair.is_initialized and self.second_of_pair.get() is not None:
            candidates.append(self.second_of_pair.get())
        unique: dict[Path, FastqWriter] = {}
        for writer in candidates:
            unique.setdefault(writer.key, writer)
        return list(unique.values())


def make_file_name_safe(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", name.strip())


def _fastq_extension(compress: bool) -> str:  # noqa: FBT001
    return ".fastq.gz" if compress else ".fastq"


def _output_path(file_name: str, config: ConversionConfig) -> Path:
    return config.output_dir / file_name if config.output_dir is not None else Path(file_name)


def _required_tag_value(read_group: ReadGroup, config: ConversionConfig) -> str:
    value = read_group.tag_value(config.rg_tag)
    if value is None:
        msg = (
            f"The selected RG_TAG: {config.rg_tag} is not present in the header "
            f"for read group {read_group.id}"
        )
        logger.error(msg)
        raise MissingHeaderFieldError(msg)
    return value


def read_group_fastq_path(read_group: ReadGroup, suffix: str, config: ConversionConfig) -> Path:
    """e.g. <PU>_1.fastq.gz under OUTPUT_DIR."""
    stem = make_file_name_safe(_required_tag_value(read_group, config)) + suffix
    return _output_path(stem + _fastq_extension(config.compress_outputs_per_rg), config)


def tag_group_fastq_paths(
    read_group: ReadGroup | None,
    tag_groups: Sequence[TagGroup],
    config: ConversionConfig,
) -> list[Path]:
    """One path per tag group, prefixed with the read group's tag value when given."""
    prefix = "" if read_group is None else f"{_required_tag_value(read_group, config)}_"
    extension = _fastq_extension(config.compress_outputs_per_tag_group)
    return [
        _output_path(make_file_name_safe(prefix + group.label) + extension, config)
        for group in tag_groups
    ]


# ----------------------------- WRITER ROUTING ------------------------------ #


class WriterRouter:
    """
    Maps a record's read group to its WriterSet.

    In single-destination mode one WriterSet is registered under `None` and
    under every header read group, so records with an unknown or missing RG
    still land in it. In per-read-group mode only header read groups route.
    """

    def __init__(self, table: dict[str | None, WriterSet], registry: WriterRegistry) -> None:
        self._table = table
        self.registry = registry

    @classmethod
    def from_read_groups(
        cls,
        read_groups: Sequence[ReadGroup],
        config: ConversionConfig,
        registry: WriterRegistry | None = None,
    ) -> WriterRouter:
        registry = registry if registry is not None else WriterRegistry()
        tag_groups = parse_tag_groups(config)
        try:
            if config.output_per_rg:
                table = _per_read_group_table(read_groups, tag_groups, config, registry)
            else:
                table = _single_destination_table(read_groups, tag_groups, config, registry)
        except Exception:
            registry.close_all()
            raise
        if not table:
            msg = "Input does not contain read groups, consider not using OUTPUT_PER_RG"
            logger.error(msg)
            raise MissingHeaderFieldError(msg)
        logger.debug(f"Routing table has {len(table)} entries over {len(registry)} open files")
        return cls(table, registry)

    def writers_for(self, read_group_id: str | None) -> WriterSet:
        writer_set = self._table.get(read_group_id)
        if writer_set is None:
            writer_set = self._table.get(None)
        if writer_set is None:
            msg = f"No output is configured for read group {read_group_id!r}"
            logger.error(msg)
            raise MissingDestinationError(msg)
        return writer_set

    def writer_sets(self) -> list[WriterSet]:
        """Distinct writer sets, in registration order."""
        unique: dict[int, WriterSet] = {}
        for writer_set in self._table.values():
            unique.setdefault(id(writer_set), writer_set)
        return list(unique.values())

    def close_all(self) -> int:
        """Close every distinct writer reachable from a writer set, each once."""
        distinct: dict[Path, FastqWriter] = {}
        for writer_set in self.writer_sets():
            for writer in writer_set.writers():
                distinct.setdefault(writer.key, writer)
        closed = 0
        for writer in distinct.values():
            if not writer.closed:
                writer.close()
                closed += 1
        logger.debug(f"Closed {closed} FASTQ files")
        return closed


def _single_destination_table(
    read_groups: Sequence[ReadGroup],
    tag_groups: Sequence[TagGroup],
    config: ConversionConfig,
    registry: WriterRegistry,
) -> dict[str | None, WriterSet]:
    first = registry.open(config.fastq)
    if config.interleave:
        second: FastqWriter | None = first
    elif config.second_end_fastq is not None:
        second = registry.open(config.second_end_fastq)
    else:
        second = None
    unpaired = first if config.unpaired_fastq is None else registry.open(config.unpaired_fastq)
    tag_writers = [registry.open(p) for p in tag_group_fastq_paths(None, tag_groups, config)]

    writer_set = WriterSet(first, Lazy.of(second), unpaired, tag_writers)
    table: dict[str | None, WriterSet] = {None: writer_set}
    for rg in read_groups:
        table[rg.id] = writer_set
    return table


def _per_read_group_table(
    read_groups: Sequence[ReadGroup],
    tag_groups: Sequence[TagGroup],
    config: ConversionConfig,
    registry: WriterRegistry,
) -> dict[str | None, WriterSet]:
    # No distinct unpaired file per read group; unpaired reads share the _1 file.
    table: dict[str | None, WriterSet] = {}
    for rg in read_groups:
        first = registry.open(read_group_fastq_path(rg, "_1", config))

        def open_second(rg: ReadGroup = rg, first: FastqWriter = first) -> FastqWriter:
            if config.interleave:
                return first
            return registry.open(read_group_fastq_path(rg, "_2", config))

        tag_writers = [registry.open(p) for p in tag_group_fastq_paths(rg, tag_groups, config)]
        table[rg.id] = WriterSet(first, Lazy(open_second), first, tag_writers)
    return table


# ------------------------------ CORE LOGIC --------------------------------- #


def _write_tag_records(
    read: pysam.AlignedSegment,
    mate_number: int | None,
    writers: WriterSet,
    tag_groups: Sequence[TagGroup],
) -> int:
    records = build_tag_records(read, mate_number, tag_groups)
    for writer, record in zip(writers.tag_writers, records):
        writer.write(record)
    return len(records)


def process_stream(  # noqa: C901
    records: Iterable[pysam.AlignedSegment],
    router: WriterRouter,
    config: ConversionConfig,
) -> ConversionStats:
    """
    Single pass over `records`, writing FASTQ through `router`.

    - Drops secondary/supplementary and QC-failed records unless included
    - Buffers paired records until their mate arrives, then writes read 1
      and read 2 to their writers
    - Writes tag group records next to every written read
    - Closes every writer once at the end, also when a record fails

    Mates left without a partner are reported once with an OrphanMateWarning.
    """
    stats = ConversionStats()
    mates = MateBuffer()
    tag_groups = parse_tag_groups(config)

    try:
        for read in records:
            stats.records_seen += 1
            if stats.records_seen % PROGRESS_EVERY == 0:
                logger.info(
                    f"Progress: seen={stats.records_seen}, pairs={stats.pairs_written}, "
                    f"unpaired={stats.unpaired_written}, waiting_mates={len(mates)}",
                )

            if (read.is_secondary or read.is_supplementary) and not config.include_non_primary_alignments:
                stats.skipped_non_primary += 1
                continue
            if read.is_qcfail and not config.include_non_pf_reads:
                stats.skipped_non_pf += 1
                continue

            writers = router.writers_for(_read_group_id(read))

            if not read.is_paired:
                writers.unpaired.write(
                    transform_record(
                        read, None, config.read1_trim, config.read1_max_bases_to_write, config
                    )
                )
                stats.tag_records_written += _write_tag_records(read, None, writers, tag_groups)
                stats.unpaired_written += 1
                continue

            pair = mates.add(read)
            if pair is None:
                continue
            read1, read2 = pair

            writers.first_of_pair.write(
                transform_record(read1, 1, config.read1_trim, config.read1_max_bases_to_write, config)
            )
            stats.tag_records_written += _write_tag_records(read1, 1, writers, tag_groups)

            second_writer = writers.get_second_of_pair()
            if second_writer is None:
                msg = "Input contains paired reads but no SECOND_END_FASTQ specified"
                logger.error(msg)
                raise MissingDestinationError(msg)
            second_writer.write(
                transform_record(read2, 2, config.read2_trim, config.read2_max_bases_to_write, config)
            )
            stats.tag_records_written += _write_tag_records(read2, 2, writers, tag_groups)
            stats.pairs_written += 1
    finally:
        router.close_all()

    stats.orphan_mates = len(mates)
    if stats.orphan_mates:
        msg = f"Found {stats.orphan_mates} unpaired mates"
        logger.warning(msg)
        logger.debug(f"First orphan mates: {mates.orphan_names()[:10]}")
        warnings.warn(msg, OrphanMateWarning, stacklevel=2)

    logger.info(
        f"Process totals: seen={stats.records_seen}, pairs={stats.pairs_written}, "
        f"unpaired={stats.unpaired_written}, tag_records={stats.tag_records_written}, "
        f"skipped_non_primary={stats.skipped_non_primary}, skipped_non_pf={stats.skipped_non_pf}",
    )
    return stats


# ----------------------------- I/O UTILITIES ------------------------------- #


def _read_mode_from_ext(path: str) -> str:
    """Determine pysam read mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "r"
    if lower.endswith(".bam"):
        return "rb"
    if lower.endswith(".cram"):
        return "rc"
    msg = "Input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(path: str, reference: str | None = None) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM for reading. Unaligned inputs (no @SQ lines) are
    accepted. For CRAM, pass a reference filename.
    """
    mode = _read_mode_from_ext(path)
    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference
    logger.debug(f"Opening for read: {path} (mode={mode})")
    return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)


def run_conversion(
    in_path: str,
    config: ConversionConfig,
    reference: str | None = None,
) -> ConversionStats:
    """Open the input, build the writers from its read groups, and convert."""
    with open_alignment(in_path, reference=reference) as inp:
        read_groups = read_groups_from_header(inp.header)
        logger.debug(f"Read groups in header: {[rg.id for rg in read_groups]}")
        router = WriterRouter.from_read_groups(read_groups, config)
        # Unaligned SAM (no @SQ lines) only iterates through fetch(until_eof=True)
        return process_stream(inp.fetch(until_eof=True), router, config)


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Convert SAM/BAM/CRAM records to FASTQ.\n"
            "Paired reads are matched by name in a single pass and written to first/second\n"
            "end files (or one interleaved file); unpaired reads go to the first end file\n"
            "unless --unpaired-fastq is given. With --output-per-rg, one file set is written\n"
            "per read group. Tag groups rebuild extra FASTQs from SAM tags (e.g. barcodes)."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )

    # I/O
    p.add_argument("-i", "--input", dest="in_path", required=True, help="Input SAM/BAM/CRAM")
    p.add_argument(
        "--reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM input)",
    )

    single = p.add_argument_group("Single destination output")
    single.add_argument(
        "-F",
        "--fastq",
        type=Path,
        default=None,
        help="Output FASTQ (single-end, or first end of the pair)",
    )
    single.add_argument(
        "--second-end-fastq",
        type=Path,
        default=None,
        help="Output FASTQ for the second end of the pair",
    )
    single.add_argument(
        "--unpaired-fastq",
        type=Path,
        default=None,
        help="Output FASTQ for unpaired reads; requires --second-end-fastq",
    )
    single.add_argument(
        "--interleave",
        action="store_true",
        help="Write both ends of each pair to one FASTQ, headers tagged /1 and /2",
    )

    per_rg = p.add_argument_group("Per read group output")
    per_rg.add_argument(
        "--output-per-rg",
        action="store_true",
        help="Write a FASTQ (two if paired) per read group",
    )
    per_rg.add_argument(
        "--compress-outputs-per-rg",
        action="store_true",
        help="Gzip per read group FASTQs and add a .gz extension",
    )
    per_rg.add_argument(
        "--rg-tag",
        default="PU",
        help="Read group field naming per read group files: PU or ID (default: PU)",
    )
    per_rg.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for per read group and tag group FASTQs",
    )

    # Selection
    p.add_argument(
        "--include-non-pf-reads",
        action="store_true",
        help="Include reads failing vendor quality checks",
    )
    p.add_argument(
        "--include-non-primary-alignments",
        action="store_true",
        help="Include secondary and supplementary alignments",
    )

    # Read transforms
    tx = p.add_argument_group("Read transforms")
    tx.add_argument(
        "--no-re-reverse",
        dest="re_reverse",
        action="store_false",
        help="Keep negative strand reads as stored instead of reverse complementing them",
    )
    tx.add_argument(
        "--clipping-attribute",
        default=None,
        help="Tag holding the 1-based position at which the read should be clipped",
    )
    tx.add_argument(
        "--clipping-action",
        default=None,
        help=(
            "What to do past the clip point:\n"
            "  X: trim bases and qualities\n"
            "  N: change bases to N\n"
            "  <int>: set base qualities to that value"
        ),
    )
    tx.add_argument(
        "--clipping-min-length",
        type=int,
        default=0,
        help="Clip no shorter than this many bases",
    )
    tx.add_argument("--read1-trim", type=int, default=0, help="Bases to trim from the start of read 1")
    tx.add_argument(
        "--read1-max-bases",
        type=int,
        default=None,
        help="Maximum bases of read 1 to write after trimming",
    )
    tx.add_argument("--read2-trim", type=int, default=0, help="Bases to trim from the start of read 2")
    tx.add_argument(
        "--read2-max-bases",
        type=int,
        default=None,
        help="Maximum bases of read 2 to write after trimming",
    )
    tx.add_argument(
        "--quality",
        type=int,
        default=None,
        help="End-trim reads with the phred/bwa quality trimming algorithm at this quality",
    )

    # Tag groups
    tags = p.add_argument_group("Tag groups")
    tags.add_argument(
        "--sequence-tag-group",
        action="append",
        default=None,
        help="Comma separated tags whose values form a read sequence (repeatable)",
    )
    tags.add_argument(
        "--quality-tag-group",
        action="append",
        default=None,
        help="Comma separated tags whose values form the matching qualities (repeatable)",
    )
    tags.add_argument(
        "--tag-group-separator",
        action="append",
        default=None,
        help="Sequence placed between the tag values of each group (repeatable)",
    )
    tags.add_argument(
        "--compress-outputs-per-tag-group",
        action="store_true",
        help="Gzip tag group FASTQs and add a .gz extension",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def config_from_args(args: argparse.Namespace) -> ConversionConfig:
    return build_config(
        fastq=args.fastq,
        second_end_fastq=args.second_end_fastq,
        unpaired_fastq=args.unpaired_fastq,
        output_per_rg=args.output_per_rg,
        compress_outputs_per_rg=args.compress_outputs_per_rg,
        rg_tag=args.rg_tag,
        output_dir=args.output_dir,
        re_reverse=args.re_reverse,
        interleave=args.interleave,
        include_non_pf_reads=args.include_non_pf_reads,
        include_non_primary_alignments=args.include_non_primary_alignments,
        clipping_attribute=args.clipping_attribute,
        clipping_action=args.clipping_action,
        clipping_min_length=args.clipping_min_length,
        read1_trim=args.read1_trim,
        read1_max_bases_to_write=args.read1_max_bases,
        read2_trim=args.read2_trim,
        read2_max_bases_to_write=args.read2_max_bases,
        quality=args.quality,
        sequence_tag_group=tuple(args.sequence_tag_group or ()),
        quality_tag_group=tuple(args.quality_tag_group or ()),
        tag_group_separator=tuple(args.tag_group_separator or ()),
        compress_outputs_per_tag_group=args.compress_outputs_per_tag_group,
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting SAM to FASTQ conversion.")

    try:
        config = config_from_args(args)
        logger.debug(f"ConversionConfig: {config}")
        stats = run_conversion(args.in_path, config, reference=args.reference)
    except SamToFastqError as err:
        logger.error(f"Conversion failed: {err}")
        sys.exit(1)

    logger.success(
        f"Pairs: {stats.pairs_written} | Unpaired: {stats.unpaired_written} | "
        f"Tag records: {stats.tag_records_written} | "
        f"Skipped (non-primary): {stats.skipped_non_primary} | "
        f"Skipped (non-PF): {stats.skipped_non_pf} | Orphan mates: {stats.orphan_mates}",
    )
    logger.info("Conversion complete.")


if __name__ == "__main__":
    main()
