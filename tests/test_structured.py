"""
Tests for the LLM parse + single strict retry policy.
"""

import pytest

from ugcflow.pipeline import audit
from ugcflow.pipeline.errors import ParseError
from ugcflow.pipeline.structured import RETRY_TEMPERATURE, STRICT_SUFFIX, generate_structured

from conftest import FakeLLM


class TestGenerateStructured:
    @pytest.mark.asyncio
    async def test_first_response_parses(self, store, make_project, fake_db):
        project = make_project()
        llm = FakeLLM('{"shots": [{"prompt": "jar on marble"}]}')

        value = await generate_structured(llm, store, project["id"], "broll_planning", "sys", "user")

        assert value == [{"prompt": "jar on marble"}]
        assert len(llm.calls) == 1
        assert fake_db.events(audit.JSON_PARSE_FAILURE) == []

    @pytest.mark.asyncio
    async def test_repairable_response_needs_no_retry(self, store, make_project):
        project = make_project()
        llm = FakeLLM('```json\n[{"a":1},]\n```')

        value = await generate_structured(llm, store, project["id"], "broll_planning", "sys", "user")

        assert value == [{"a": 1}]
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_is_strict_and_cooler(self, store, make_project, fake_db):
        project = make_project()
        llm = FakeLLM("here you go!", '{"product_name": "GlowSerum"}')

        value = await generate_structured(
            llm, store, project["id"], "product_analysis", "sys", "user", expect=dict
        )

        assert value == {"product_name": "GlowSerum"}
        assert len(llm.calls) == 2
        assert llm.calls[1]["system"] == "sys" + STRICT_SUFFIX
        assert llm.calls[1]["temperature"] == RETRY_TEMPERATURE

        failures = fake_db.events(audit.JSON_PARSE_FAILURE)
        assert len(failures) == 1
        assert failures[0]["detail"]["rawResponse"] == "here you go!"
        assert failures[0]["stage"] == "product_analysis"

    @pytest.mark.asyncio
    async def test_two_failures_raise_with_both_payloads(self, store, make_project, fake_db):
        project = make_project()
        llm = FakeLLM("not json", "still not json")

        with pytest.raises(ParseError) as exc:
            await generate_structured(llm, store, project["id"], "scripting", "sys", "user", expect=dict)

        err = exc.value
        assert err.first_raw == "not json"
        assert err.retry_raw == "still not json"
        assert err.first_error and err.retry_error
        assert len(llm.calls) == 2
        assert len(fake_db.events(audit.JSON_PARSE_FAILURE)) == 2

    @pytest.mark.asyncio
    async def test_each_call_is_costed(self, store, make_project, fake_db):
        project = make_project()
        llm = FakeLLM("nope", "[1]")

        await generate_structured(llm, store, project["id"], "broll_planning", "sys", "user")

        assert fake_db.rows("project", id=project["id"])[0]["cost_usd"] == pytest.approx(0.02)
