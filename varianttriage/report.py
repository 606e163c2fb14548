# File: varianttriage/report.py
# Location: varianttriage/varianttriage/report.py

"""
Report generation module.

Turns the records of a variant query into a table and writes it as a TSV
file (or to stdout) and, optionally, as a self-contained HTML page rendered
from the ``templates/report.html`` Jinja2 template.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import pandas as pd
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .query import ANN_FIELDS, VariantRecord

logger = logging.getLogger("varianttriage")

CORE_COLUMNS = ["CHROM", "POS", "ID", "REF", "ALT", "QUAL", "FILTER"]

# Column headers for annotation keys; order follows the ANN layout
ANNOTATION_COLUMNS = {
    "allele": "ALLELE",
    "consequence": "CONSEQUENCE",
    "impact": "IMPACT",
    "gene": "GENE",
    "gene_id": "GENE_ID",
    "feature_type": "FEATURE_TYPE",
    "feature_id": "FEATURE_ID",
    "biotype": "BIOTYPE",
    "rank": "RANK",
    "hgvs_c": "HGVS_C",
    "protein_change": "HGVS_P",
}


def records_to_dataframe(records: Iterable[VariantRecord]) -> pd.DataFrame:
    """
    Collect query records into a DataFrame.

    Core VCF columns come first, followed by the annotation keys that occur
    in at least one record (in ANN order, then any other keys sorted).

    Parameters
    ----------
    records : Iterable[VariantRecord]
        Records yielded by a query

    Returns
    -------
    pd.DataFrame
        One row per record; missing annotation values are empty strings
    """
    rows = []
    seen_keys = set()
    for record in records:
        row: Dict[str, Any] = {
            "CHROM": record.chrom,
            "POS": record.pos,
            "ID": record.id,
            "REF": record.ref,
            "ALT": record.alt,
            "QUAL": record.qual,
            "FILTER": record.filter,
        }
        for key, value in record.annotation.items():
            seen_keys.add(key)
            row[ANNOTATION_COLUMNS.get(key, key.upper())] = value
        rows.append(row)

    ordered_keys = [k for k in ANN_FIELDS if k in seen_keys]
    ordered_keys += sorted(seen_keys - set(ANN_FIELDS))
    columns = CORE_COLUMNS + [ANNOTATION_COLUMNS.get(k, k.upper()) for k in ordered_keys]

    df = pd.DataFrame(rows, columns=columns)
    annotation_columns = columns[len(CORE_COLUMNS):]
    if annotation_columns:
        df[annotation_columns] = df[annotation_columns].fillna("")
    logger.debug(f"Report table has {len(df)} rows and {len(df.columns)} columns")
    return df


def write_tsv(df: pd.DataFrame, output_file: Optional[str]) -> Optional[str]:
    """
    Write the report table as TSV.

    Parameters
    ----------
    df : pd.DataFrame
        Report table
    output_file : str or None
        Target path; None, '-' or 'stdout' write to stdout

    Returns
    -------
    str or None
        The written path, None for stdout
    """
    if output_file in (None, "-", "stdout"):
        df.to_csv(sys.stdout, sep="\t", index=False)
        return None

    path = Path(output_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False)
    logger.info(f"Wrote {len(df)} variant(s) to {path}")
    return str(path)


def write_html(
    df: pd.DataFrame,
    output_file: str,
    title: str = "Variant triage report",
    summary: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Render the report table as a standalone HTML page.

    Parameters
    ----------
    df : pd.DataFrame
        Report table
    output_file : str
        Path of the HTML file
    title : str
        Page title
    summary : dict, optional
        Key/value pairs shown above the table (source file, filter, counts)

    Returns
    -------
    str
        The written path
    """
    templates_dir = Path(__file__).parent / "templates"
    if not templates_dir.exists():
        raise FileNotFoundError(f"Templates directory not found at: {templates_dir}")

    env = Environment(
        loader=FileSystemLoader(str(templates_dir)),
        autoescape=select_autoescape(["html"]),
    )
    template = env.get_template("report.html")

    html_content = template.render(
        title=title,
        generated=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        summary=summary or {},
        columns=list(df.columns),
        rows=df.astype(str).values.tolist(),
    )

    path = Path(output_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(html_content, encoding="utf-8")
    logger.info(f"HTML report generated at {path}")
    return str(path)
