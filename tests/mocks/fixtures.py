"""Test fixtures and factory functions."""

from pathlib import Path

from varianttriage.pipeline_core import WorkspaceConfig

VCF_COLUMNS = ["#CHROM", "POS", "ID", "REF", "ALT", "QUAL", "FILTER", "INFO"]

MODERATE_DNMT3B = {
    "chrom": "chr20",
    "pos": 32786453,
    "id": ".",
    "ref": "C",
    "alt": "T",
    "qual": "48.3",
    "filter": "PASS",
    "info": "AC=1;AN=2;ANN=T|missense_variant|MODERATE|DNMT3B|ENSG00000088305|transcript|"
    "ENST00000328111.6|protein_coding|10/23|c.1093C>T|p.Arg365Cys|1190/4211|1093/2562|"
    "365/853||",
}

MODIFIER_BRCA1 = {
    "chrom": "chr17",
    "pos": 43044391,
    "id": ".",
    "ref": "G",
    "alt": "A",
    "qual": "35.0",
    "filter": "PASS",
    "info": "AC=2;AN=2;ANN=A|intron_variant|MODIFIER|BRCA1|ENSG00000012048|transcript|"
    "ENST00000357654.9|protein_coding|21/22|c.5278-14C>T||||||",
}


def create_test_workspace(root: Path, reference_text: str = ">chr20\nACGT\n") -> WorkspaceConfig:
    """Create the input_data/output_data/temp_data layout with non-empty inputs.

    Parameters
    ----------
    root : Path
        Workspace root (usually ``tmp_path``)
    reference_text : str
        Content of the reference FASTA

    Returns
    -------
    WorkspaceConfig
        Config for the created layout (output/temp dirs are not created)
    """
    input_dir = root / "input_data"
    input_dir.mkdir(parents=True, exist_ok=True)
    (input_dir / "ref.fasta").write_text(reference_text)
    (input_dir / "sample.bam").write_bytes(b"BAM\x01fake-alignment")
    return WorkspaceConfig.from_layout(root, "ref.fasta", "sample.bam")


def vcf_line(var: dict) -> str:
    """Render a variant dict as a VCF data line (without newline)."""
    return "\t".join(
        [
            var["chrom"],
            str(var["pos"]),
            var.get("id", "."),
            var["ref"],
            var["alt"],
            var.get("qual", "."),
            var.get("filter", "PASS"),
            var.get("info", "."),
        ]
    )


def create_annotated_vcf(
    output_path: Path, variants: list = None, extra_lines: list = None
) -> Path:
    """Create a small snpEff-annotated VCF.

    Parameters
    ----------
    output_path : Path
        Where to write the VCF
    variants : list of dict, optional
        Variant records (default: one MODERATE/DNMT3B and one MODIFIER/BRCA1)
    extra_lines : list of str, optional
        Raw lines appended after the variants, e.g. malformed records

    Returns
    -------
    Path
        Path to created VCF file
    """
    if variants is None:
        variants = [MODERATE_DNMT3B, MODIFIER_BRCA1]

    with open(output_path, "w") as f:
        f.write("##fileformat=VCFv4.2\n")
        f.write("##SnpEffVersion=\"5.2 (build 2023-09-29)\"\n")
        f.write(
            '##INFO=<ID=ANN,Number=.,Type=String,Description="Functional annotations: '
            "'Allele | Annotation | Annotation_Impact | Gene_Name | Gene_ID | Feature_Type | "
            "Feature_ID | Transcript_BioType | Rank | HGVS.c | HGVS.p'\">\n"
        )
        f.write("\t".join(VCF_COLUMNS) + "\n")
        for var in variants:
            f.write(vcf_line(var) + "\n")
        for line in extra_lines or []:
            f.write(line + "\n")

    return output_path
