# File: varianttriage/query.py
# Location: varianttriage/varianttriage/query.py

"""
Variant query module.

Streams an annotated VCF (plain or gzipped) and yields the records whose
functional annotation satisfies a predicate, e.g. every MODERATE impact
variant in DNMT3B.

The annotation is read from the INFO field. Both the ``ANN=`` format of
current snpEff releases and the legacy ``EFF=`` format are understood:

    ANN=Allele|Annotation|Annotation_Impact|Gene_Name|Gene_ID|Feature_Type|
        Feature_ID|Transcript_BioType|Rank|HGVS.c|HGVS.p|...
    EFF=Effect(Impact|Functional_Class|Codon_Change|Amino_Acid_Change|
        Amino_Acid_Length|Gene_Name|Transcript_BioType|Gene_Coding|
        Transcript_ID|Exon_Rank|Genotype_Number)

A line carrying several comma-separated annotation entries is expanded into
one record per entry, the same way the one-effect-per-line splitting works,
so that a predicate such as ``impact == MODERATE AND gene == DNMT3B`` must
hold for a single entry. Sub-fields may be missing or empty; they are simply
absent from the record's annotation mapping.

Lines that cannot be parsed are skipped and counted, never fatal.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Tuple

from .pipeline_core.error_handling import QueryError
from .utils import smart_open

logger = logging.getLogger("varianttriage")

HEADER_MARKER = b"#"

# VCF columns: CHROM (0), POS (1), ID (2), REF (3), ALT (4),
#              QUAL (5), FILTER (6), INFO (7), FORMAT (8), ...
INFO_FIELD_NUM = 7

ANN_FIELDS = (
    "allele",
    "consequence",
    "impact",
    "gene",
    "gene_id",
    "feature_type",
    "feature_id",
    "biotype",
    "rank",
    "hgvs_c",
    "protein_change",
)

EFF_FIELDS = (
    "impact",
    "functional_class",
    "codon_change",
    "amino_acid_change",
    "amino_acid_length",
    "gene",
    "biotype",
    "coding",
    "feature_id",
    "rank",
    "allele",
)

CORE_FIELDS = ("chrom", "pos", "id", "ref", "alt", "qual", "filter")

_EFF_ENTRY = re.compile(r"^([^(]+)\((.*)\)$")


class MalformedLineError(ValueError):
    """Raised for a data line that is not a usable VCF record."""


@dataclass(frozen=True)
class VariantRecord:
    """One variant with (at most) one functional annotation entry."""

    chrom: str
    pos: int
    id: str
    ref: str
    alt: str
    qual: str
    filter: str
    annotation: Mapping[str, str] = field(default_factory=dict, hash=False)

    def get(self, name: str) -> Optional[str]:
        """Value of a core column or annotation key, None when absent."""
        if name in CORE_FIELDS:
            value = getattr(self, name)
            return str(value) if value is not None else None
        return self.annotation.get(name)

    @property
    def impact(self) -> Optional[str]:
        """Impact level, e.g. MODERATE."""
        return self.annotation.get("impact")

    @property
    def gene(self) -> Optional[str]:
        """Gene symbol of the annotation entry."""
        return self.annotation.get("gene")

    @property
    def consequence(self) -> Optional[str]:
        """Sequence ontology consequence term(s), '&'-joined."""
        return self.annotation.get("consequence")

    @property
    def protein_change(self) -> Optional[str]:
        """HGVS protein notation, e.g. p.Arg545Cys."""
        return self.annotation.get("protein_change")


# --------------------------------------------------------------------------
# Predicates
# --------------------------------------------------------------------------


class QueryPredicate:
    """A pure condition on a VariantRecord, composable with ``&``."""

    def __call__(self, record: VariantRecord) -> bool:
        raise NotImplementedError

    def __and__(self, other: "QueryPredicate") -> "AllOf":
        return AllOf(self, other)


class MatchAll(QueryPredicate):
    """Accepts every record."""

    def __call__(self, record: VariantRecord) -> bool:
        return True

    def __repr__(self) -> str:
        return "MatchAll()"


class FieldEquals(QueryPredicate):
    """``field == value`` (case-sensitive)."""

    def __init__(self, field_name: str, value: str):
        self.field_name = field_name
        self.value = value

    def __call__(self, record: VariantRecord) -> bool:
        return record.get(self.field_name) == self.value

    def __repr__(self) -> str:
        return f"{self.field_name} == {self.value!r}"


class FieldIn(QueryPredicate):
    """``field`` is one of ``values``."""

    def __init__(self, field_name: str, values: Iterable[str]):
        self.field_name = field_name
        self.values: FrozenSet[str] = frozenset(values)

    def __call__(self, record: VariantRecord) -> bool:
        return record.get(self.field_name) in self.values

    def __repr__(self) -> str:
        return f"{self.field_name} in {sorted(self.values)}"


class FieldContains(QueryPredicate):
    """``substring`` occurs in ``field``."""

    def __init__(self, field_name: str, substring: str):
        self.field_name = field_name
        self.substring = substring

    def __call__(self, record: VariantRecord) -> bool:
        value = record.get(self.field_name)
        return value is not None and self.substring in value

    def __repr__(self) -> str:
        return f"{self.substring!r} in {self.field_name}"


class FieldHasToken(QueryPredicate):
    """``token`` is one of the ``separator``-delimited terms of ``field``.

    Consequences are written like ``missense_variant&splice_region_variant``.
    """

    def __init__(self, field_name: str, token: str, separator: str = "&"):
        self.field_name = field_name
        self.token = token
        self.separator = separator

    def __call__(self, record: VariantRecord) -> bool:
        value = record.get(self.field_name)
        return value is not None and self.token in value.split(self.separator)

    def __repr__(self) -> str:
        return f"{self.token!r} in {self.field_name}.split({self.separator!r})"


class AllOf(QueryPredicate):
    """Logical AND, evaluated in order and short-circuiting."""

    def __init__(self, *predicates: QueryPredicate):
        flat: List[QueryPredicate] = []
        for predicate in predicates:
            if isinstance(predicate, AllOf):
                flat.extend(predicate.predicates)
            elif not isinstance(predicate, MatchAll):
                flat.append(predicate)
        self.predicates: Tuple[QueryPredicate, ...] = tuple(flat)

    def __call__(self, record: VariantRecord) -> bool:
        return all(predicate(record) for predicate in self.predicates)

    def __repr__(self) -> str:
        if not self.predicates:
            return "MatchAll()"
        return " AND ".join(repr(p) for p in self.predicates)


class AnyOf(QueryPredicate):
    """Logical OR, evaluated in order and short-circuiting."""

    def __init__(self, *predicates: QueryPredicate):
        self.predicates: Tuple[QueryPredicate, ...] = tuple(predicates)

    def __call__(self, record: VariantRecord) -> bool:
        return any(predicate(record) for predicate in self.predicates)

    def __repr__(self) -> str:
        return "(" + " OR ".join(repr(p) for p in self.predicates) + ")"


def _single_or_set(field_name: str, values: Iterable[str]) -> Optional[QueryPredicate]:
    values = [v for v in values if v]
    if not values:
        return None
    if len(values) == 1:
        return FieldEquals(field_name, values[0])
    return FieldIn(field_name, values)


def build_predicate(
    impact: Optional[Iterable[str]] = None,
    gene: Optional[Iterable[str]] = None,
    consequence: Optional[Iterable[str]] = None,
    filter_status: Optional[Iterable[str]] = None,
) -> QueryPredicate:
    """
    Build the predicate for the common triage filters.

    Each argument accepts one or more values; several values of one argument
    mean "any of", different arguments are combined with AND. Gene and
    impact checks come first since they are the most selective.

    Parameters
    ----------
    impact : iterable of str, optional
        Impact levels (HIGH, MODERATE, LOW, MODIFIER)
    gene : iterable of str, optional
        Gene symbols
    consequence : iterable of str, optional
        Consequence terms matched against the '&'-separated term list
    filter_status : iterable of str, optional
        FILTER column values, e.g. PASS

    Returns
    -------
    QueryPredicate
        The combined predicate (MatchAll when nothing is given)
    """
    parts: List[QueryPredicate] = []
    for field_name, values in (("gene", gene), ("impact", impact)):
        if isinstance(values, str):
            values = [values]
        predicate = _single_or_set(field_name, values or [])
        if predicate is not None:
            parts.append(predicate)

    if isinstance(consequence, str):
        consequence = [consequence]
    terms = [c for c in (consequence or []) if c]
    if terms:
        # any of the terms: a single term is the common case
        if len(terms) == 1:
            parts.append(FieldHasToken("consequence", terms[0]))
        else:
            parts.append(AnyOf(*(FieldHasToken("consequence", t) for t in terms)))

    if isinstance(filter_status, str):
        filter_status = [filter_status]
    predicate = _single_or_set("filter", filter_status or [])
    if predicate is not None:
        parts.append(predicate)

    if not parts:
        return MatchAll()
    if len(parts) == 1:
        return parts[0]
    return AllOf(*parts)


# --------------------------------------------------------------------------
# Parsing
# --------------------------------------------------------------------------


def _fields_to_mapping(names: Tuple[str, ...], values: List[str]) -> Dict[str, str]:
    return {name: value for name, value in zip(names, values) if value.strip()}


def parse_ann_entry(entry: str) -> Dict[str, str]:
    """Split one ``ANN`` entry into its named sub-fields."""
    return _fields_to_mapping(ANN_FIELDS, entry.split("|"))


def parse_eff_entry(entry: str) -> Dict[str, str]:
    """Split one legacy ``EFF`` entry into the same keys as ``ANN``."""
    match = _EFF_ENTRY.match(entry)
    if not match:
        return {"consequence": entry} if entry else {}
    mapping = _fields_to_mapping(EFF_FIELDS, match.group(2).split("|"))
    mapping["consequence"] = match.group(1)
    aa_change = mapping.get("amino_acid_change", "")
    # p.Ala12Thr/c.34G>A
    protein = aa_change.split("/")[0]
    if protein:
        mapping["protein_change"] = protein
    return mapping


def parse_annotations(info: str) -> List[Dict[str, str]]:
    """
    Extract the functional annotation entries from an INFO column.

    Parameters
    ----------
    info : str
        The INFO column (``;``-separated KEY=VALUE items)

    Returns
    -------
    List[Dict[str, str]]
        One mapping per entry; empty when the line carries no annotation
    """
    ann_value = None
    eff_value = None
    for item in info.split(";"):
        if item.startswith("ANN="):
            ann_value = item[4:]
        elif item.startswith("EFF="):
            eff_value = item[4:]

    if ann_value is not None:
        return [parse_ann_entry(e) for e in ann_value.split(",") if e]
    if eff_value is not None:
        return [parse_eff_entry(e) for e in eff_value.split(",") if e]
    return []


def decode_line(raw: bytes) -> str:
    """Decode one line of the file, rejecting bytes that are not UTF-8."""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedLineError(f"invalid UTF-8 at byte {e.start}")


def parse_line(line: str) -> List[VariantRecord]:
    """
    Parse one VCF data line into records, one per annotation entry.

    Raises
    ------
    MalformedLineError
        If the line has fewer than 8 columns, an invalid position or an
        empty CHROM/REF/ALT
    """
    columns = line.rstrip("\r\n").split("\t")
    if len(columns) <= INFO_FIELD_NUM:
        raise MalformedLineError(f"expected at least 8 columns, found {len(columns)}")

    chrom, pos_str, var_id, ref, alt, qual, filter_status, info = columns[: INFO_FIELD_NUM + 1]
    if not chrom or not ref or not alt:
        raise MalformedLineError("empty CHROM, REF or ALT")
    try:
        pos = int(pos_str)
    except ValueError:
        raise MalformedLineError(f"invalid position {pos_str!r}")
    if pos < 0:
        raise MalformedLineError(f"negative position {pos}")

    entries = parse_annotations(info) or [{}]
    return [
        VariantRecord(
            chrom=chrom,
            pos=pos,
            id=var_id,
            ref=ref,
            alt=alt,
            qual=qual,
            filter=filter_status,
            annotation=entry,
        )
        for entry in entries
    ]


# --------------------------------------------------------------------------
# Query
# --------------------------------------------------------------------------


class VariantQuery:
    """
    Lazy, single-pass view of the records of a file matching a predicate.

    Iterating opens the file anew, so the query can be repeated and yields
    the same sequence for an unchanged file. Counters describe the most
    recent pass.

    Attributes
    ----------
    path : str
        The annotated VCF
    predicate : QueryPredicate
        Condition a record must satisfy
    split_annotations : bool
        Yield one record per matching annotation entry; if False, only the
        first matching entry of each line is yielded
    skipped_lines : int
        Malformed lines skipped in the last pass
    lines_read : int
        Data lines read in the last pass
    matched : int
        Records yielded in the last pass
    """

    def __init__(
        self,
        path: str,
        predicate: Optional[Callable[[VariantRecord], bool]] = None,
        split_annotations: bool = True,
    ):
        self.path = str(path)
        self.predicate = predicate if predicate is not None else MatchAll()
        self.split_annotations = split_annotations
        self.skipped_lines = 0
        self.lines_read = 0
        self.matched = 0
        self._check_readable()

    def _check_readable(self) -> None:
        if not os.path.isfile(self.path):
            raise QueryError(self.path, "file not found")
        if not os.access(self.path, os.R_OK):
            raise QueryError(self.path, "permission denied")

    def __iter__(self) -> Iterator[VariantRecord]:
        self._check_readable()
        self.skipped_lines = 0
        self.lines_read = 0
        self.matched = 0
        try:
            handle = smart_open(self.path, "rb")
        except OSError as e:
            raise QueryError(self.path, str(e))

        logger.debug(f"Querying {self.path} with predicate: {self.predicate!r}")
        with handle:
            try:
                for line_number, raw in enumerate(handle, start=1):
                    if not raw.strip() or raw.startswith(HEADER_MARKER):
                        continue
                    self.lines_read += 1
                    try:
                        records = parse_line(decode_line(raw))
                    except MalformedLineError as e:
                        self.skipped_lines += 1
                        logger.debug(f"{self.path}:{line_number}: skipping malformed line ({e})")
                        continue
                    for record in records:
                        if self.predicate(record):
                            self.matched += 1
                            yield record
                            if not self.split_annotations:
                                break
            except (OSError, EOFError) as e:
                raise QueryError(self.path, f"read failed: {e}")

        if self.skipped_lines:
            logger.warning(
                f"Skipped {self.skipped_lines} malformed line(s) of {self.lines_read} "
                f"in {self.path}"
            )
        logger.info(f"{self.matched} record(s) matched in {self.path}")


def query(
    path: str,
    predicate: Optional[Callable[[VariantRecord], bool]] = None,
    split_annotations: bool = True,
) -> VariantQuery:
    """
    Query an annotated VCF.

    Parameters
    ----------
    path : str
        Annotated VCF, optionally gzipped
    predicate : callable, optional
        Condition on VariantRecord (default: accept all)
    split_annotations : bool
        One record per matching annotation entry (default) or per line

    Returns
    -------
    VariantQuery
        Lazy iterable of matching records; see ``skipped_lines`` after a pass

    Raises
    ------
    QueryError
        If the file does not exist or is not readable
    """
    return VariantQuery(path, predicate, split_annotations)
