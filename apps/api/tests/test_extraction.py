import asyncio
import json

import pytest

from bizcoach.domain import get_section
from bizcoach.providers import ThreadMessage
from bizcoach.schemas import BusinessPlanCreate
from bizcoach.services.errors import ExtractionFailed
from bizcoach.services.extraction import (
    StructuredExtractor,
    drop_empty,
    format_transcript,
    merge_record,
    parse_extraction_reply,
    validate_record,
)
from bizcoach.services.plans import create_plan, read_section_record, save_section_record, write_section_record

PRODUCTS = get_section("products")


# -----------------------------------------------------------------------------
# Parsing and merging
# -----------------------------------------------------------------------------


def test_parse_plain_fenced_and_embedded_json():
    assert parse_extraction_reply('{"a": 1}') == {"a": 1}
    assert parse_extraction_reply('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_extraction_reply('Here you go:\n```\n{"a": 1}\n```\nAnything else?') == {"a": 1}
    assert parse_extraction_reply('Sure! {"a": {"b": "}"}} hope that helps') == {"a": {"b": "}"}}


def test_parse_rejects_missing_or_non_object_json():
    for reply in ("", "no json here", "[1, 2, 3]", "{not json}"):
        with pytest.raises(ExtractionFailed):
            parse_extraction_reply(reply)


def test_merge_is_shallow_per_field_overwrite():
    assert merge_record({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}


def test_empty_values_never_overwrite():
    assert merge_record({"a": "kept", "b": ["x"]}, {"a": "", "b": [], "c": None}) == {"a": "kept", "b": ["x"]}
    assert drop_empty({"a": " ", "b": 0, "c": False}) == {"b": 0, "c": False}


def test_validate_coerces_llm_shapes():
    record = validate_record(PRODUCTS, {
        "productDescription": "Hand-poured soy candles",
        "uniqueSellingPoints": "Small batches",
        "competitiveAdvantages": ["Local wax", "", 42],
        "somethingElse": "kept as extra",
        "pricingStrategy": None,
    })
    assert record == {
        "productDescription": "Hand-poured soy candles",
        "uniqueSellingPoints": ["Small batches"],
        "competitiveAdvantages": ["Local wax", "42"],
        "somethingElse": "kept as extra",
    }


def test_format_transcript_labels_roles():
    messages = [
        ThreadMessage(id="1", role="user", text="I sell candles"),
        ThreadMessage(id="2", role="assistant", text="Lovely! Who buys them?"),
        ThreadMessage(id="3", role="assistant", text="   "),
    ]
    assert format_transcript(messages) == "User: I sell candles\n\nCoach: Lovely! Who buys them?"


def test_section_record_paths_leave_siblings_alone():
    pricing = get_section("pricing")
    content = {"marketingPlan": {"positioning": {"targetMarket": "families"}}}
    updated = write_section_record(content, pricing, {"pricingModel": "tiered"})
    assert updated["marketingPlan"]["positioning"] == {"targetMarket": "families"}
    assert read_section_record(updated, pricing) == {"pricingModel": "tiered"}
    assert content == {"marketingPlan": {"positioning": {"targetMarket": "families"}}}


# -----------------------------------------------------------------------------
# Extractor
# -----------------------------------------------------------------------------


def test_extractor_uses_a_throwaway_thread(assistants, fast_policy):
    prompts = []

    def respond(prompt):
        prompts.append(prompt)
        return "```json\n" + json.dumps({"productDescription": "Handmade candles", "pricingStrategy": ""}) + "\n```"

    assistants.responders["asst_extract"] = respond
    extractor = StructuredExtractor(assistants, "asst_extract", policy=fast_policy)

    record = asyncio.run(extractor.extract("User: I sell handmade candles", PRODUCTS))
    assert record == {"productDescription": "Handmade candles"}
    assert assistants.created_threads == 1
    assert assistants.deleted == ["thread_1"]
    assert "User: I sell handmade candles" in prompts[0]
    assert "productDescription" in prompts[0]


def test_extractor_unparseable_reply_raises_and_cleans_up(assistants, fast_policy):
    assistants.responders["asst_extract"] = lambda prompt: "I could not find anything."
    extractor = StructuredExtractor(assistants, "asst_extract", policy=fast_policy)

    with pytest.raises(ExtractionFailed):
        asyncio.run(extractor.extract("User: hi", PRODUCTS))
    assert len(assistants.deleted) == 1


def test_failed_extraction_leaves_stored_record_unchanged(run_db, assistants, fast_policy):
    assistants.responders["asst_extract"] = lambda prompt: "not json"
    extractor = StructuredExtractor(assistants, "asst_extract", policy=fast_policy)

    async def scenario(db):
        plan = await create_plan(db, "owner-1", BusinessPlanCreate(title="Candles"))
        await save_section_record(db, plan.id, PRODUCTS, {"productDescription": "Candles", "pricingStrategy": "Premium"})
        try:
            extracted = await extractor.extract("User: we also sell soap", PRODUCTS)
        except ExtractionFailed:
            extracted = None
        if extracted:
            await save_section_record(db, plan.id, PRODUCTS, extracted)
        return read_section_record(plan.content, PRODUCTS)

    assert run_db(scenario) == {"productDescription": "Candles", "pricingStrategy": "Premium"}


def test_save_merges_into_existing_record(run_db):
    async def scenario(db):
        plan = await create_plan(db, "owner-1", BusinessPlanCreate(title="Candles"))
        await save_section_record(db, plan.id, PRODUCTS, {"productDescription": "Candles", "pricingStrategy": "Low"})
        merged = await save_section_record(db, plan.id, PRODUCTS, {"pricingStrategy": "Premium"})
        return merged, plan.content

    merged, content = run_db(scenario)
    assert merged == {"productDescription": "Candles", "pricingStrategy": "Premium"}
    assert content == {"products": merged}
