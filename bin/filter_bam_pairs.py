#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger
from pydantic import Field, ValidationError
from pydantic.dataclasses import dataclass as pydantic_dataclass

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Window length for the k-mer complexity score
KMER_SIZE: int = 21

# Emit a progress line after processing this many pairs
PROGRESS_EVERY: int = 100_000


# ------------------------------- DATA TYPES -------------------------------- #


class CigarKind(Enum):
    """Closed set of CIGAR operation kinds as far as contiguity is concerned."""

    MATCH = auto()  # M
    SEQUENCE_MATCH = auto()  # =
    OTHER = auto()  # I, D, N, S, H, P, X and anything unrecognised

    @staticmethod
    def classify(op: int) -> CigarKind:
        """Map a pysam CIGAR op code to its kind."""
        match op:
            case 0:
                return CigarKind.MATCH
            case 7:
                return CigarKind.SEQUENCE_MATCH
            case _:
                return CigarKind.OTHER

    @property
    def is_mapped(self) -> bool:
        return self in (CigarKind.MATCH, CigarKind.SEQUENCE_MATCH)


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int

    @staticmethod
    def from_tuple(t: tuple[int, int]) -> CigarOp:
        """Convert a raw (op, len) tuple to CigarOp."""
        op, ln = t
        return CigarOp(op, ln)

    @property
    def kind(self) -> CigarKind:
        return CigarKind.classify(self.op)


@pydantic_dataclass(frozen=True)
class FilterConfig:
    """
    Thresholds applied to every mate pair.

    - complexity_cutoff: minimum k-mer complexity for each mate, in [0, 1]
    - min_mapped: minimum longest contiguous mapped run for each mate;
      0 disables the contiguity filter rather than requiring zero bases
    """

    complexity_cutoff: float = Field(default=0.8, ge=0.0, le=1.0)
    min_mapped: int = Field(default=0, ge=0)

    @property
    def mapped_filter_enabled(self) -> bool:
        return self.min_mapped > 0


class PairDecision(NamedTuple):
    """Scores for both mates and the resulting keep/drop verdict."""

    complexity_r1: float
    complexity_r2: float
    mapped_r1: int | None  # None when the contiguity filter is disabled
    mapped_r2: int | None
    keep: bool


@dataclass
class FilterStats:
    """Running pair counters for one filtering run."""

    total_pairs: int = 0
    kept_pairs: int = 0

    @property
    def removed_pairs(self) -> int:
        return self.total_pairs - self.kept_pairs

    @property
    def pass_rate(self) -> float:
        """Kept pairs as a percentage of all pairs (0.0 before any pair)."""
        if self.total_pairs == 0:
            return 0.0
        return self.kept_pairs / self.total_pairs * 100.0


class UnsortedInputError(ValueError):
    """Two consecutive records do not share a read name."""


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Route loguru to stderr at a level picked by `-v` count minus `-q` count.

    With no flags only the final summary (SUCCESS) and problems show up; one
    `-v` adds the run parameters and progress lines (INFO), three or more add
    per-pair decisions (TRACE). Each `-q` drops a level down to CRITICAL.
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


# ------------------------------- COMPLEXITY -------------------------------- #


def kmer_complexity(sequence: str | bytes | None) -> float:
    """
    Fraction of distinct k-mers among all k-mers of `sequence`.

    Sequences shorter than KMER_SIZE hold no k-mer at all and score 0.0, so a
    missing sequence is treated as maximally degenerate. Bases are compared
    verbatim (no case folding, N is just another symbol).
    """
    if sequence is None or len(sequence) < KMER_SIZE:
        return 0.0

    total_kmers = len(sequence) - KMER_SIZE + 1
    distinct = {sequence[i : i + KMER_SIZE] for i in range(total_kmers)}

    # Positive invariant: at least one and at most total_kmers distinct k-mers
    assert 0 < len(distinct) <= total_kmers, (
        f"Distinct k-mer count {len(distinct)} outside (0, {total_kmers}]"
    )

    return len(distinct) / total_kmers


# ---------------------------- CIGAR UTILITIES ------------------------------ #


def longest_mapped_run(cigar: Iterable[tuple[int, int]] | None) -> int:
    """
    Length of the longest unbroken stretch of M/= operations.

    Adjacent mapped runs accumulate. Every other operation ends the current
    stretch, zero-length ones included. A missing CIGAR (unmapped read)
    yields 0.
    """
    if cigar is None:
        return 0

    longest = 0
    current = 0
    for run in map(CigarOp.from_tuple, cigar):
        if run.kind.is_mapped:
            current += run.length
            continue
        longest = max(longest, current)
        current = 0

    # The final stretch is never closed by a trailing operation
    return max(longest, current)


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """Determine pysam open mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    msg = f"Output/input must end with .sam, .bam, or .cram: {path}"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with correct mode. For CRAM, pass a reference filename.
    - If write=True and template_or_header is an AlignmentFile, the header is
      copied from it unchanged.
    - Otherwise, pass a header dict.
    - Reading never requires @SQ lines, so unaligned name-sorted files open,
      and a BAM missing its EOF marker opens; truncation then surfaces as a
      read error mid-stream.
    """
    mode = _io_mode_from_ext(path, write)

    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if not write:
        return pysam.AlignmentFile(
            path, mode, check_sq=False, ignore_truncation=True, **kwargs
        )

    if isinstance(template_or_header, pysam.AlignmentFile):
        return pysam.AlignmentFile(path, mode, template=template_or_header, **kwargs)
    if isinstance(template_or_header, dict):
        return pysam.AlignmentFile(path, mode, header=template_or_header, **kwargs)
    msg = (
        f"Writing to '{path}' requires a template AlignmentFile or a header dict, "
        f"got {type(template_or_header)}"
    )
    logger.error(msg)
    raise ValueError(msg)


def iter_records(aln: pysam.AlignmentFile) -> Iterator[pysam.AlignedSegment]:
    """
    Stream every record in file order. Plain iteration over an AlignmentFile
    refuses files without @SQ lines; fetch(until_eof=True) reads them too and
    needs no index.
    """
    return aln.fetch(until_eof=True)


def close_input(aln: pysam.AlignmentFile) -> None:
    """Close the input; a truncated BAM reports a failure here as well."""
    try:
        aln.close()
    except OSError as err:
        logger.warning(f"Closing input '{aln.filename.decode()}' failed: {err}")


def iter_mate_pairs(
    records: Iterable[pysam.AlignedSegment],
) -> Iterator[tuple[pysam.AlignedSegment, pysam.AlignedSegment]]:
    """
    Yield consecutive records two at a time as mate pairs.

    The stream ends quietly at end of input, with a warning when a trailing
    record has no mate, and with an error log (but no exception) when the
    underlying reader fails mid-stream. Consecutive records with different
    names mean the input is not name-sorted and raise UnsortedInputError.
    """
    stream = iter(records)
    while True:
        try:
            read1 = next(stream)
        except StopIteration:
            return
        except OSError as err:
            logger.error(f"Error reading record: {err}")
            return

        try:
            read2 = next(stream)
        except StopIteration:
            logger.warning(
                f"Unpaired read at end of input: '{read1.query_name}' (not written)"
            )
            return
        except OSError as err:
            logger.error(f"Error reading record: {err}")
            return

        if read1.query_name != read2.query_name:
            msg = (
                "Input is not properly name-sorted!\n"
                f"  Read 1: {read1.query_name}\n"
                f"  Read 2: {read2.query_name}\n"
                "Please sort: samtools sort -n input.bam -o name_sorted.bam"
            )
            raise UnsortedInputError(msg)

        yield read1, read2


# ------------------------------ CORE LOGIC --------------------------------- #


def decide_pair(
    read1: pysam.AlignedSegment,
    read2: pysam.AlignedSegment,
    config: FilterConfig,
) -> PairDecision:
    """
    Score both mates and decide whether the pair survives.

    Both mates must clear the complexity cutoff and, when min_mapped > 0, the
    contiguous mapped-run threshold. With min_mapped == 0 the CIGARs are not
    scanned at all.
    """
    complexity_r1 = kmer_complexity(read1.query_sequence)
    complexity_r2 = kmer_complexity(read2.query_sequence)
    pass_complexity = (
        complexity_r1 >= config.complexity_cutoff
        and complexity_r2 >= config.complexity_cutoff
    )

    mapped_r1 = mapped_r2 = None
    pass_mapped = True
    if config.mapped_filter_enabled:
        mapped_r1 = longest_mapped_run(read1.cigartuples)
        mapped_r2 = longest_mapped_run(read2.cigartuples)
        pass_mapped = mapped_r1 >= config.min_mapped and mapped_r2 >= config.min_mapped

    return PairDecision(
        complexity_r1=complexity_r1,
        complexity_r2=complexity_r2,
        mapped_r1=mapped_r1,
        mapped_r2=mapped_r2,
        keep=pass_complexity and pass_mapped,
    )


def filter_pairs(
    inp: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    config: FilterConfig,
) -> FilterStats:
    """
    Stream mate pairs from `inp`, writing pairs that pass `config` to `outp`.

    Kept mates are written in input order, one directly after the other.
    `outp` only needs a write(read) method.
    UnsortedInputError propagates; anything already written stays written.

    Returns:
        FilterStats with the total and kept pair counts
    """
    stats = FilterStats()

    for read1, read2 in iter_mate_pairs(inp):
        stats.total_pairs += 1

        decision = decide_pair(read1, read2, config)
        logger.trace(f"Pair '{read1.query_name}': {decision}")

        if decision.keep:
            outp.write(read1)
            outp.write(read2)
            stats.kept_pairs += 1

        if stats.total_pairs % PROGRESS_EVERY == 0:
            logger.info(
                f"Processed {stats.total_pairs} pairs, kept {stats.kept_pairs} "
                f"({stats.pass_rate:.1f}%)",
            )

    # Positive invariant: counters are consistent
    assert 0 <= stats.kept_pairs <= stats.total_pairs, (
        f"Counter inconsistency: total={stats.total_pairs}, kept={stats.kept_pairs}"
    )

    return stats


def log_summary(stats: FilterStats, out_path: str) -> None:
    """Report the final pair totals."""
    logger.success("=== Filtering Complete ===")
    logger.success(f"Total pairs: {stats.total_pairs}")
    logger.success(f"Kept pairs: {stats.kept_pairs}")
    logger.success(f"Removed pairs: {stats.removed_pairs}")
    if stats.total_pairs > 0:
        logger.success(f"Pass rate: {stats.pass_rate:.2f}%")
    logger.success(f"Output file: {out_path}")


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
            "Filter paired-end reads in a name-sorted SAM/BAM/CRAM by k-mer complexity\n"
            "and longest contiguous mapped bases. Pairs are kept or dropped together:\n"
            "both mates must pass every active filter."
        ),
    )

    # I/O
    p.add_argument(
        "-i",
        "--input",
        dest="in_path",
        required=True,
        help="Input SAM/BAM/CRAM (must be name-sorted)",
    )
    p.add_argument(
        "-o",
        "--output",
        dest="out_path",
        required=True,
        help="Output SAM/BAM/CRAM",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Filters
    p.add_argument(
        "-c",
        "--complexity",
        type=float,
        default=0.8,
        help=f"K-mer complexity cutoff, 0.0-1.0 (k={KMER_SIZE}, default: 0.8)",
    )
    p.add_argument(
        "-m",
        "--min-mapped",
        type=int,
        default=0,
        help="Minimum contiguous mapped bases (default: 0 = disabled)",
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


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        config = FilterConfig(
            complexity_cutoff=args.complexity,
            min_mapped=args.min_mapped,
        )
    except ValidationError as err:
        logger.error(f"Invalid filter settings: {err}")
        logger.error("Complexity cutoff must be between 0 and 1; min mapped must be >= 0")
        sys.exit(1)

    logger.info("Filtering paired-end reads by k-mer complexity and mapped bases")
    logger.info(f"  Input: {args.in_path}")
    logger.info(f"  Output: {args.out_path}")
    logger.info(f"  Complexity cutoff: {config.complexity_cutoff:.3f}")
    if config.mapped_filter_enabled:
        logger.info(f"  Min contiguous mapped bases: {config.min_mapped} bp")
    logger.info(f"  K-mer size: {KMER_SIZE}")

    try:
        input_alignment = open_alignment(
            args.in_path,
            write=False,
            reference=args.reference,
        )
    except (OSError, ValueError) as err:
        logger.error(f"Cannot open input '{args.in_path}': {err}")
        sys.exit(1)
    try:
        output_alignment = open_alignment(
            args.out_path,
            write=True,
            template_or_header=input_alignment,
            reference=args.reference,
        )
    except (OSError, ValueError) as err:
        close_input(input_alignment)
        logger.error(f"Cannot open output '{args.out_path}': {err}")
        sys.exit(1)

    try:
        stats = filter_pairs(iter_records(input_alignment), output_alignment, config)
    except UnsortedInputError as err:
        logger.error(str(err))
        sys.exit(1)
    finally:
        output_alignment.close()
        close_input(input_alignment)

    log_summary(stats, args.out_path)


if __name__ == "__main__":
    main()
