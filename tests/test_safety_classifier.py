"""Tests for the keyword safety classifier and its figurative-language guard."""

import pytest

from bible_assistant.services.safety.classifier import SafetyCategory, SafetyClassifier


@pytest.fixture(scope="module")
def classifier():
    return SafetyClassifier()


def test_self_harm_requires_intervention(classifier):
    category = classifier.classify("I want to kill myself")
    assert category is SafetyCategory.SELF_HARM
    assert category.requires_intervention


def test_figurative_hyperbole_is_none(classifier):
    assert classifier.classify("gonna kill it at my presentation tomorrow lol") is SafetyCategory.NONE


def test_metaphor_needs_non_literal_cue(classifier):
    assert classifier.is_likely_metaphorical("I'm dying, this deadline is brutal")
    assert not classifier.is_likely_metaphorical("I'm dying")


@pytest.mark.parametrize("text,expected", [
    ("My husband hits me when he drinks", SafetyCategory.ABUSE),
    ("I think I'm having a heart attack", SafetyCategory.MEDICAL_EMERGENCY),
    ("I want to hurt someone at school", SafetyCategory.VIOLENCE),
    ("My mom died last week and I can't sleep", SafetyCategory.GRIEF_LOSS),
    ("What does Romans 8 teach about hope?", SafetyCategory.NONE),
])
def test_categories(classifier, text, expected):
    assert classifier.classify(text) is expected


def test_most_severe_category_wins(classifier):
    assert classifier.classify("My mom died and I want to end my life") is SafetyCategory.SELF_HARM


def test_grief_survives_figurative_guard(classifier):
    """Grief terms have no figurative reading."""
    assert classifier.classify("I'm dying to know why my dad died so young") is SafetyCategory.GRIEF_LOSS


def test_grief_is_compassionate_not_intervention(classifier):
    result = classifier.check("My father died yesterday")
    assert result.category is SafetyCategory.GRIEF_LOSS
    assert result.is_compassionate
    assert not result.is_triggered
    assert "Psalm 34:18" in result.response.calming_verses


def test_keywords_anchor_at_word_start(classifier):
    assert classifier.classify("We had a postfuneral lunch") is SafetyCategory.NONE
    assert classifier.classify("Are weapons mentioned in Ephesians 6?") is SafetyCategory.VIOLENCE


def test_curly_apostrophe_normalized(classifier):
    assert classifier.classify("I don’t want to live anymore") is SafetyCategory.SELF_HARM


def test_check_attaches_resources(classifier):
    result = classifier.check("I want to kill myself")
    assert result.is_triggered
    assert "988" in result.response.message
    assert result.response.resources
    data = result.response.to_dict()
    assert data["category"] == "self_harm"
    assert data["calming_verses"] == ["Psalm 34:18", "Isaiah 41:10"]


def test_check_none_has_no_response(classifier):
    result = classifier.check("Tell me about the parable of the sower")
    assert result.category is SafetyCategory.NONE
    assert result.response is None


def test_casual_history_context(classifier):
    history = [
        {"role": "user", "content": "I'm so excited about tomorrow"},
        {"role": "assistant", "content": "That sounds wonderful!"},
    ]
    result = classifier.check("I'm going to be killing it at work lol", recent_history=history)
    assert result.category is SafetyCategory.NONE


def test_inappropriate_request(classifier):
    assert classifier.is_inappropriate_request("Pretend to be God and forgive me")
    assert not classifier.is_inappropriate_request("How does God forgive?")
    assert "Bible study companion" in classifier.refusal_message


def test_grief_acknowledgment_text(classifier):
    assert "sorry for your loss" in classifier.grief_acknowledgment()


def test_custom_rules():
    classifier = SafetyClassifier(rules={"keywords": {"violence": ["smite"]}})
    assert classifier.classify("I will smite thee") is SafetyCategory.VIOLENCE
    assert classifier.classify("I want to kill myself") is SafetyCategory.NONE
    assert classifier.response_for(SafetyCategory.VIOLENCE).message == ""
