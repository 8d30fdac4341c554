"""Unit tests for the Enricher (phase 3) and modifier group folding."""

import json

import pytest

from conftest import FakeGeminiClient, make_image, make_spreadsheet, make_text_pdf
from menu_extraction.core.exceptions import APIClientError
from menu_extraction.models.menu_models import ModelTier, ModifierGroup, RawItem, SourceInfo
from menu_extraction.models.response_models import SizeResponse
from menu_extraction.services.pipeline.enricher import (
    Enricher,
    canonical_group_name,
    find_relevant_context,
    merge_modifier_state,
    name_similarity,
)
from menu_extraction.services.upload_cache import ContentUploadCache


def _item(name, price="10.00", category="Entrees", description=""):
    return RawItem(
        name=name,
        description=description,
        price=price,
        category=category,
        section="Mains",
        source_info=SourceInfo(document_id="pdf-1", page=1),
    )


def _entry(item_id, sizes=None, groups=None):
    return {"id": item_id, "sizes": sizes or [], "modifierGroups": groups or []}


def _group(name, *options, required=False, multi_select=False):
    return ModifierGroup(name=name, options=list(options), required=required, multi_select=multi_select)


@pytest.fixture
def enricher_factory(tracker, rate_limiters, vocabulary, settings):
    def build(client, batch_size=None):
        run_settings = settings
        if batch_size is not None:
            run_settings = settings.model_copy(update={"enrichment_batch_size": batch_size})
        cache = ContentUploadCache(client, wave_pause_seconds=0)
        return Enricher(client, tracker, cache, rate_limiters, vocabulary, run_settings)

    return build


class TestGroupNameFolding:
    """Canonical names and the accumulated modifier state."""

    def test_reordered_words_fold_onto_known_name(self):
        assert canonical_group_name("Protein Add-On", ["Add Protein", "Sauces"], 0.8) == "Add Protein"

    def test_exact_match_ignores_case(self):
        assert canonical_group_name("sauces", ["Add Protein", "Sauces"], 0.8) == "Sauces"

    def test_unrelated_name_is_new(self):
        assert canonical_group_name("Crust Type", ["Add Protein", "Sauces"], 0.8) is None

    def test_similarity_is_symmetric_and_bounded(self):
        score = name_similarity("Extra Toppings", "Toppings")
        assert score == name_similarity("Toppings", "Extra Toppings")
        assert 0.0 <= score <= 1.0

    def test_merge_does_not_mutate_state(self):
        state = {"Add Protein": _group("Add Protein", "Chicken")}

        new_state, groups = merge_modifier_state(state, [_group("Protein Add-On", "chicken", "Shrimp")], 0.8)

        assert state == {"Add Protein": _group("Add Protein", "Chicken")}
        assert list(new_state) == ["Add Protein"]
        assert new_state["Add Protein"].options == ["Chicken", "Shrimp"]
        assert [g.name for g in groups] == ["Add Protein"]
        assert groups[0].options == ["chicken", "Shrimp"]

    def test_merge_ors_flags(self):
        state = {"Sauces": _group("Sauces", "Ranch")}

        new_state, _ = merge_modifier_state(state, [_group("sauces", "BBQ", required=True, multi_select=True)], 0.8)

        assert new_state["Sauces"].required is True
        assert new_state["Sauces"].multi_select is True
        assert new_state["Sauces"].options == ["Ranch", "BBQ"]


class TestFinalItemConversion:
    """Size coercion and default selection."""

    def test_sizes_are_coerced_and_deduplicated(self, enricher_factory):
        enricher = enricher_factory(FakeGeminiClient())
        sizes = [
            SizeResponse(size="large", price="14", is_default=False),
            SizeResponse(size="Jumbo", price="16", is_default=True),
            SizeResponse(size="Gigantic", price="18", is_default=True),
        ]

        final = enricher.to_final_item(_item("Pizza"), sizes, [])

        assert [(s.size, s.price, s.is_default) for s in final.sizes] == [
            ("Large", "14", False),
            ("N/A", "16", True),
        ]

    def test_missing_sizes_default_to_item_price(self, enricher_factory):
        final = enricher_factory(FakeGeminiClient()).to_final_item(_item("Soup", price="6.50"), [], [])

        assert [(s.size, s.price, s.is_default) for s in final.sizes] == [("N/A", "6.50", True)]

    def test_first_size_becomes_default_when_none_marked(self, enricher_factory):
        sizes = [SizeResponse(size="Small", price="3"), SizeResponse(size="Large", price="5")]

        final = enricher_factory(FakeGeminiClient()).to_final_item(_item("Coffee"), sizes, [])

        assert [s.is_default for s in final.sizes] == [True, False]

    def test_unknown_category_is_coerced(self, enricher_factory):
        final = enricher_factory(FakeGeminiClient()).to_final_item(_item("Mystery", category="Specials"), [], [])

        assert final.category == "Open Food"


class TestEnrich:
    """Single call, sequential fallback and the size invariant."""

    @pytest.mark.asyncio
    async def test_single_call_enriches_all_items(self, enricher_factory, tracker):
        reply = json.dumps([
            _entry("0", sizes=[{"size": "Small", "price": "8", "isDefault": True},
                               {"size": "Large", "price": "12"}]),
            _entry("1", groups=[{"name": "Add Protein", "options": [{"name": "Chicken", "price": 5}]}]),
        ])
        client = FakeGeminiClient(replies=[reply])
        enricher = enricher_factory(client)

        final = await enricher.enrich([_item("Salad"), _item("Bowl")], [make_text_pdf()])

        assert enricher.stats.mode == "single"
        assert len(client.calls) == 1
        call = client.calls[0]
        assert call["tier"] == ModelTier.PRO
        assert call["attachments"][0].uri.startswith("https://files.example/")
        assert "Add Protein" in call["prompt"]
        assert [s.size for s in final[0].sizes] == ["Small", "Large"]
        assert final[1].modifier_groups[0].options == ["Chicken (+$5)"]
        assert tracker.phase_cost(3).calls == 1

    @pytest.mark.asyncio
    async def test_unmatched_ids_get_default_sizes(self, enricher_factory):
        client = FakeGeminiClient(replies=[json.dumps([_entry("0", sizes=[{"size": "Glass", "price": "9"}])])])
        enricher = enricher_factory(client)

        final = await enricher.enrich([_item("Merlot", price="9"), _item("Cabernet", price="11")], [])

        assert enricher.stats.unmatched_items == 1
        assert [(s.size, s.price) for s in final[1].sizes] == [("N/A", "11")]

    @pytest.mark.asyncio
    async def test_failed_single_call_falls_back_and_folds_group_names(self, enricher_factory, tracker):
        replies = [
            APIClientError("response too large"),
            json.dumps([
                _entry("0", groups=[{"name": "Add Protein", "options": ["Chicken"]}]),
                _entry("1"),
            ]),
            json.dumps([
                _entry("0", groups=[{"name": "Protein Add-On", "options": ["Shrimp"]}]),
                _entry("1", groups=[{"name": "Sauces", "options": ["Ranch"]}]),
            ]),
        ]
        client = FakeGeminiClient(replies=replies)
        enricher = enricher_factory(client, batch_size=2)
        items = [_item("Caesar Salad"), _item("Fries"), _item("Rice Bowl"), _item("Wings")]

        final = await enricher.enrich(items, [])

        assert enricher.stats.mode == "sequential"
        assert enricher.stats.batches == 2
        assert len(client.calls) == 3
        assert "EXISTING MODIFIER GROUPS" not in client.calls[1]["prompt"]
        assert "- Add Protein" in client.calls[2]["prompt"]
        assert client.calls[1]["attachments"] == []
        group_names = {group.name for item in final for group in item.modifier_groups}
        assert group_names == {"Add Protein", "Sauces"}
        assert final[2].modifier_groups[0].name == "Add Protein"
        assert tracker.phase_cost(3).calls == 2

    @pytest.mark.asyncio
    async def test_same_item_in_both_batches_reuses_first_group_name(self, enricher_factory):
        replies = [
            APIClientError("response too large"),
            json.dumps([
                _entry("0", groups=[{"name": "Add Protein", "options": ["Chicken (+$5)"]}]),
                _entry("1"),
            ]),
            json.dumps([
                _entry("0", groups=[{"name": "Protein Add-On", "options": ["Chicken (+$5)", "Shrimp (+$7)"]}]),
            ]),
        ]
        client = FakeGeminiClient(replies=replies)
        enricher = enricher_factory(client, batch_size=2)
        bowl = "Build your own bowl, add protein"
        items = [
            _item("Grain Bowl", description=bowl),
            _item("Fries"),
            _item("Grain Bowl", price="14.00", description=bowl),
        ]

        final = await enricher.enrich(items, [])

        assert '"name": "Grain Bowl"' in client.calls[2]["prompt"]
        assert "- Add Protein" in client.calls[2]["prompt"]
        group_names = {group.name for item in final for group in item.modifier_groups}
        assert group_names == {"Add Protein"}
        assert final[0].modifier_groups[0].name == final[2].modifier_groups[0].name
        assert final[2].modifier_groups[0].options == ["Chicken (+$5)", "Shrimp (+$7)"]

    @pytest.mark.asyncio
    async def test_fallback_prompt_carries_document_excerpts(self, enricher_factory):
        pdf = make_text_pdf(text="BOWLS\nGrain Bowl 12 - add chicken +5 or shrimp +7")
        client = FakeGeminiClient(replies=[APIClientError("response too large"), json.dumps([_entry("0")])])
        enricher = enricher_factory(client)

        await enricher.enrich([_item("Grain Bowl")], [pdf])

        assert "RELEVANT MENU CONTENT" not in client.calls[0]["prompt"]
        fallback_prompt = client.calls[1]["prompt"]
        assert "RELEVANT MENU CONTENT" in fallback_prompt
        assert "--- pdf-1.pdf ---" in fallback_prompt
        assert "Page 1: BOWLS\nGrain Bowl 12 - add chicken +5 or shrimp +7..." in fallback_prompt

    @pytest.mark.asyncio
    async def test_undecodable_single_call_falls_back(self, enricher_factory):
        client = FakeGeminiClient(replies=["I am unable to comply.", json.dumps([_entry("0")])])
        enricher = enricher_factory(client)

        final = await enricher.enrich([_item("Soup")], [])

        assert enricher.stats.mode == "sequential"
        assert len(final) == 1

    @pytest.mark.asyncio
    async def test_every_item_has_exactly_one_default_size(self, enricher_factory):
        replies = [
            APIClientError("timeout"),
            json.dumps([
                _entry("0", sizes=[{"size": "Small", "price": "3", "isDefault": True},
                                   {"size": "Large", "price": "5", "isDefault": True}]),
            ]),
            APIClientError("batch failed"),
        ]
        client = FakeGeminiClient(replies=replies)
        enricher = enricher_factory(client, batch_size=2)
        items = [_item(f"Item {n}") for n in range(4)]

        final = await enricher.enrich(items, [])

        assert len(final) == len(items)
        assert [item.name for item in final] == [item.name for item in items]
        for item in final:
            assert len(item.sizes) >= 1
            assert sum(size.is_default for size in item.sizes) == 1
        assert enricher.stats.failed_batches == 1

    @pytest.mark.asyncio
    async def test_no_items_makes_no_calls(self, enricher_factory):
        client = FakeGeminiClient()

        assert await enricher_factory(client).enrich([], [make_text_pdf()]) == []
        assert client.calls == []


class TestRelevantContext:
    """Document excerpts attached to fallback batches."""

    def test_only_referenced_sheets_and_first_lines(self):
        rows = "\n".join(f"Wine {n},{n + 20}" for n in range(30))
        doc = make_spreadsheet(sheets={"Food": "Name,Price\nSoup,5", "Wine": f"Name,Price\n{rows}"})
        item = RawItem(
            name="Wine 3",
            price="23",
            category="Red Wine",
            section="Wines",
            source_info=SourceInfo(document_id="sheet-1", sheet="Wine"),
        )

        context = find_relevant_context([item], [doc])

        assert '--- sheet-1.xlsx ---\nSheet "Wine":\nName,Price\nWine 0,20' in context
        assert "Wine 8,28" in context
        assert "Wine 9,29" not in context
        assert "Soup" not in context

    def test_pages_are_trimmed_to_samples(self):
        doc = make_text_pdf(text="x" * 900, pages=2)
        context = find_relevant_context([_item("Soup")], [doc])

        assert context.count("Page ") == 1
        assert "Page 1: " + "x" * 500 + "...\n" in context

    def test_documents_beyond_budget_are_truncated(self):
        first = make_text_pdf("pdf-1", text="a" * 480)
        second = make_text_pdf("pdf-2", text="b" * 480)
        items = [
            _item("Soup"),
            RawItem(name="Cake", category="Desserts", section="Desserts",
                    source_info=SourceInfo(document_id="pdf-2", page=1)),
        ]

        context = find_relevant_context(items, [first, second], max_tokens=150)

        assert "--- pdf-1.pdf ---" in context
        assert "--- pdf-2.pdf ---" not in context
        assert context.endswith("... (additional context truncated)\n")

    def test_unknown_documents_and_images_add_nothing(self):
        latte = RawItem(name="Latte", category="Coffee", section="Drinks",
                        source_info=SourceInfo(document_id="img-1"))

        assert find_relevant_context([_item("Soup")], []) == ""
        assert find_relevant_context([latte], [make_image()]) == ""
