"""Shared pytest fixtures for all test modules."""

from pathlib import Path

import pytest

from mocks import FakeRunner, create_annotated_vcf, create_test_workspace
from varianttriage.pipeline_core import StageSpec, WorkspaceConfig


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: end-to-end runs of real subprocess stages over a workspace"
    )


@pytest.fixture
def workspace(tmp_path) -> WorkspaceConfig:
    """Workspace with input_data holding a non-empty reference and BAM."""
    return create_test_workspace(tmp_path)


@pytest.fixture
def annotated_vcf(tmp_path) -> Path:
    """Annotated VCF with one MODERATE/DNMT3B and one MODIFIER/BRCA1 record."""
    return create_annotated_vcf(tmp_path / "sample.ann.vcf")


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Runner that writes outputs without launching processes."""
    return FakeRunner()


@pytest.fixture
def two_stages(tmp_path):
    """Call and annotate specs wired output-to-input."""
    ref = tmp_path / "input_data" / "ref.fasta"
    ref.parent.mkdir(parents=True, exist_ok=True)
    ref.write_text(">chr1\nACGT\n")
    called = tmp_path / "output_data" / "sample.vcf"
    annotated = tmp_path / "output_data" / "sample.ann.vcf"
    call = StageSpec(name="call", command=("caller",), inputs=(ref,), output=called)
    annotate = StageSpec(
        name="annotate", command=("annotator",), inputs=(called,), output=annotated
    )
    return [call, annotate]
