"""Tests for the workflow registry and settings."""

import pytest

from app.extractpdf.config import Settings
from app.extractpdf.services.instruction_sets import (
    DEFAULT_INSTRUCTION_SET_ID,
    INSTRUCTION_SETS,
    get_instruction_set,
    is_instruction_set_id,
    resolve_instruction_set,
)


class TestInstructionSets:
    """Tests for workflow lookup."""

    def test_registry_ids(self):
        assert [workflow.id for workflow in INSTRUCTION_SETS] == [
            "ocr_all_text",
            "page_breakdown",
            "form_field_extraction",
            "signature_detection",
        ]

    def test_every_workflow_has_fields(self):
        for workflow in INSTRUCTION_SETS:
            assert workflow.fields, workflow.id
            assert workflow.steps, workflow.id

    def test_lookup(self):
        assert get_instruction_set("signature_detection").id == "signature_detection"
        assert get_instruction_set("unknown") is None
        assert get_instruction_set(None) is None
        assert is_instruction_set_id("page_breakdown")
        assert not is_instruction_set_id(42)

    def test_resolve_uses_first_known_id(self):
        """Unknown and empty candidates are skipped; the default is the last resort."""
        assert resolve_instruction_set(None, "bogus", "page_breakdown").id == "page_breakdown"
        assert resolve_instruction_set("bogus").id == DEFAULT_INSTRUCTION_SET_ID


class TestSettings:
    """Tests for processing settings normalization."""

    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.processing_concurrency == 2
        assert settings.processing_max_attempts == 3
        assert settings.retry_base_delay_ms == 2000
        assert settings.retry_max_delay_ms == 60000
        assert settings.max_pages_per_run == 40
        assert settings.default_token_safety_limit == 100_000

    def test_environment_aliases(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_CONCURRENCY", "4")
        monkeypatch.setenv("OPENROUTER_MAX_TOKENS_PER_RUN", "5000000")
        settings = Settings(_env_file=None)
        assert settings.processing_concurrency == 4
        assert settings.default_token_safety_limit == 1_000_000

    @pytest.mark.parametrize(
        "overrides,field,expected",
        [
            ({"processing_concurrency": 0}, "processing_concurrency", 1),
            ({"retry_base_delay_ms": 10}, "retry_base_delay_ms", 500),
            ({"retry_base_delay_ms": 5000, "retry_max_delay_ms": 1000}, "retry_max_delay_ms", 5000),
            ({"max_page_chars": 100}, "max_page_chars", 500),
        ],
    )
    def test_floors(self, overrides, field, expected):
        assert getattr(Settings(_env_file=None, **overrides), field) == expected
