"""Test mocks and fixtures for varianttriage tests."""

from .external_tools import COPY_AND_TAG, FakeRunner, python_tool, tool_config
from .fixtures import (
    MODERATE_DNMT3B,
    MODIFIER_BRCA1,
    create_annotated_vcf,
    create_test_workspace,
    vcf_line,
)

__all__ = [
    "COPY_AND_TAG",
    "FakeRunner",
    "python_tool",
    "tool_config",
    "MODERATE_DNMT3B",
    "MODIFIER_BRCA1",
    "create_annotated_vcf",
    "create_test_workspace",
    "vcf_line",
]
