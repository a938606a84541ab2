import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from conftest import FakeTextGenerator
from deskmem.services.categorization import (
    GENERAL_SUBJECT,
    Categorizer,
    classify,
    extract_subject,
    merge_tags,
    normalize_text,
)


def test_urgent_broken_order_is_high_priority_support():
    result = classify("I need urgent help, my order is broken")
    assert result.category == "support"
    assert result.priority == "high"
    assert "support" in result.tags
    assert "urgent" in result.tags
    assert result.sentiment == "negative"
    assert result.source == "rules"


def test_first_matching_group_names_the_category():
    result = classify("What is the price to deliver this order?")
    assert result.category == "sales"
    assert result.tags[:2] == ["sales", "delivery"]


def test_unmatched_text_is_general_with_low_confidence():
    result = classify("hello there")
    assert result.category == "general"
    assert result.tags == ["general"]
    assert result.confidence == pytest.approx(0.3)
    assert result.priority == "normal"


def test_confidence_grows_with_distinct_keyword_hits():
    single = classify("my payment")
    several = classify("payment refund invoice")
    assert single.confidence == pytest.approx(0.6)
    assert several.confidence == pytest.approx(0.8)
    assert classify(" ".join(["buy price cost quote help error issue"] * 3)).confidence <= 0.95


def test_informational_message_is_low_priority():
    assert classify("How do I change my password?").priority == "low"


def test_portuguese_keywords_and_accents():
    result = classify("Preciso de ajuda urgente, o produto chegou quebrado")
    assert result.category == "support"
    assert result.priority == "high"
    assert normalize_text("Cobrança  Pagamento") == "cobranca pagamento"
    assert classify("Qual o valor da cobrança?").category == "sales"


def test_platform_and_channel_mentions_become_tags():
    result = classify("Can you reply on WhatsApp?", platform="instagram")
    assert "instagram" in result.tags
    assert "whatsapp" in result.tags


def test_positive_sentiment():
    assert classify("Thank you, the service was excellent").sentiment == "positive"


def test_classification_is_deterministic():
    text = "Refund my invoice asap please"
    assert classify(text).to_dict() == classify(text).to_dict()


def test_extract_subject():
    assert extract_subject("short") == GENERAL_SUBJECT
    assert extract_subject("A reasonable subject line") == "A reasonable subject line"
    long_text = "word " * 30
    subject = extract_subject(long_text)
    assert subject.endswith("...")
    assert len(subject) <= 53


def test_merge_tags_preserves_order_without_duplicates():
    assert merge_tags(["a", "b"], ["b", "c", "a"]) == ["a", "b", "c"]
    assert merge_tags(None, None) == []


def test_enrich_uses_generator_only_for_ambiguous_results():
    generator = FakeTextGenerator()
    generator.classify_reply = {
        "category": "billing",
        "priority": "urgent",
        "confidence": 0.82,
        "tags": ["Chargeback"],
        "sentiment": "negative",
    }
    categorizer = Categorizer(generator)

    clear = categorizer.enrich("I want a refund for this invoice")
    assert clear.source == "rules"
    assert generator.classify_calls == []

    enriched = categorizer.enrich("something odd happened with my card")
    assert enriched.source == "llm"
    assert enriched.category == "billing"
    assert enriched.priority == "urgent"
    assert enriched.tags == ["billing", "chargeback"]
    assert enriched.confidence == pytest.approx(0.82)


def test_enrich_degrades_to_rules_when_generator_fails():
    generator = FakeTextGenerator()
    categorizer = Categorizer(generator)
    result = categorizer.enrich("something odd happened")
    assert result.source == "rules"
    assert result.category == "general"


def test_enrich_discards_unknown_category():
    generator = FakeTextGenerator()
    generator.classify_reply = {"category": "astrology", "priority": "high"}
    result = Categorizer(generator).enrich("something odd happened")
    assert result.category == "general"
    assert result.source == "rules"
