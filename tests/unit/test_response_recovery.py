import json

import pytest

from helpers import VALID_RESPONSE
from itinerary_engine.core.cancellation import CancellationToken
from itinerary_engine.core.fallback_synthesizer import OPTIMIZING_REASON
from itinerary_engine.core.response_recovery import (
    ParsedObject,
    RecoveryFailure,
    ResponseRecoveryChain,
    decode_nested,
    extract_json_block,
    normalize_quotes,
    parse_structural,
    parse_with_json_repair,
    quote_bare_values,
    quote_unquoted_keys,
    remove_trailing_commas,
    repair_syntax,
    strip_control_characters,
)
from itinerary_engine.core.schemas import Itinerary

ACTIVITY = (
    '{"image": "/img/burnham.jpg", "title": "Burnham Park", "time": "8:00-10:00AM", '
    '"desc": "Boating and strolling around the lake.", "tags": ["Nature & Scenery"]}'
)

TRAILING_COMMA = (
    '{"title": "Baguio Trip", "subtitle": "Two days", "items": '
    '[{"period": "Day 1 - Morning", "activities": [' + ACTIVITY + ",],},],}"
)
FENCED = "Here is your itinerary:\n```json\n" + VALID_RESPONSE + "\n```\nEnjoy!"
UNQUOTED_KEYS = (
    '{title: "Baguio Trip", subtitle: "Two days", items: [{period: "Day 1 - Morning", '
    'activities: [{image: "/img.jpg", title: "Burnham Park", time: "8:00-10:00AM", '
    'desc: "Boating and strolling around the lake.", tags: ["Nature & Scenery"]}]}]}'
)
MIXED_QUOTES = (
    "{'title': 'Baguio Trip', \"subtitle\": \"It's a two day plan\", 'items': "
    "[{'period': 'Day 1 - Morning', 'activities': [{'image': '/img.jpg', 'title': 'Burnham Park', "
    "'time': '8:00-10:00AM', 'desc': 'Boating and strolling around the lake.', 'tags': ['Nature & Scenery']}]}]}"
)
TRUNCATED = (
    '{"title": "Baguio Trip", "subtitle": "Two days", "items": [{"period": "Day 1 - Afternoon", '
    '"activities": [' + ACTIVITY + ', {"image": "/img/2.jpg", "title": "Tam-awan Vil'
)
PROSE = "I'm sorry, I cannot create an itinerary right now. Please try again later."

FIXTURES = [TRAILING_COMMA, FENCED, UNQUOTED_KEYS, MIXED_QUOTES, TRUNCATED, PROSE, ""]


@pytest.fixture
def chain():
    return ResponseRecoveryChain()


# Individual stages


def test_extract_json_block_strips_fences_and_prose():
    block = extract_json_block(FENCED)
    assert block.startswith("{") and block.endswith("}")
    assert json.loads(block)["title"] == "Trip"


def test_extract_json_block_without_braces():
    with pytest.raises(ValueError):
        extract_json_block(PROSE)


def test_remove_trailing_commas_leaves_strings_alone():
    text = '{"a": [1, 2,], "b": "x,}",}'
    assert json.loads(remove_trailing_commas(text)) == {"a": [1, 2], "b": "x,}"}


def test_normalize_quotes():
    assert json.loads(normalize_quotes("{“title”: “Baguio”}")) == {"title": "Baguio"}
    assert json.loads(normalize_quotes("{'title': 'Session Road'}")) == {"title": "Session Road"}
    # Apostrophes inside double-quoted strings are not touched
    assert json.loads(normalize_quotes('{"desc": "It\'s cold"}')) == {"desc": "It's cold"}


def test_strip_control_characters():
    assert strip_control_characters('{"a":\x00 "line\nbreak"}') == '{"a": "line break"}'


def test_quote_unquoted_keys():
    assert json.loads(quote_unquoted_keys('{title: "x", nested: {inner_key: 1}}')) == {
        "title": "x",
        "nested": {"inner_key": 1},
    }
    assert json.loads(quote_unquoted_keys('{"time": "9:00, note: early"}')) == {"time": "9:00, note: early"}


def test_quote_bare_values_stringifies_literals():
    # Numbers and booleans are quoted too; this is a known limitation of the stage
    repaired = json.loads(quote_bare_values('{"status": ok, "count": 42, "open": true}'))
    assert repaired == {"status": "ok", "count": "42", "open": "true"}


def test_quote_bare_values_leaves_string_contents_alone():
    text = '{"desc": "Opens at: 9am, closes late", "rating": good}'
    assert quote_bare_values(text) == '{"desc": "Opens at: 9am, closes late", "rating": "good"}'
    assert json.loads(quote_bare_values(text)) == {"desc": "Opens at: 9am, closes late", "rating": "good"}


def test_repair_syntax_combines_fixes():
    assert json.loads(repair_syntax("```json\n{title: 'A', tags: ['x',],}\n```")) == {"title": "A", "tags": ["x"]}


def test_parse_structural_salvages_activities():
    data = parse_structural(TRUNCATED)
    assert data["title"] == "Baguio Trip"
    assert data["items"][0]["period"] == "Day 1 - Afternoon"
    assert [a["title"] for a in data["items"][0]["activities"]] == ["Burnham Park"]


def test_parse_structural_without_anything():
    with pytest.raises(ValueError):
        parse_structural(PROSE)


def test_parse_with_json_repair_rejects_non_objects():
    with pytest.raises(ValueError):
        parse_with_json_repair("just words")


def test_decode_nested():
    raw = {"title": "T", "items": json.dumps([{"period": "Day 1 - Morning", "activities": "[]"}])}
    assert decode_nested(raw) == {"title": "T", "items": [{"period": "Day 1 - Morning", "activities": []}]}
    assert decode_nested({"desc": "[Closed Mondays]"}) == {"desc": "[Closed Mondays]"}


# Chain


def test_direct_parse_stage(chain):
    result = chain.recover(VALID_RESPONSE)
    assert isinstance(result, ParsedObject)
    assert result.stage == "direct"


@pytest.mark.parametrize(
    "text, stage",
    [
        (TRAILING_COMMA, "syntax_repair"),
        (FENCED, "extracted"),
        (UNQUOTED_KEYS, "syntax_repair"),
        (MIXED_QUOTES, "syntax_repair"),
        (TRUNCATED, "structural"),
    ],
)
def test_recoverable_fixtures(chain, text, stage):
    result = chain.recover(text)
    assert isinstance(result, ParsedObject)
    assert result.stage == stage
    assert isinstance(result.itinerary, Itinerary)
    assert result.itinerary.all_activities()[0].title == "Burnham Park"


def test_double_encoded_response(chain):
    result = chain.recover(json.dumps(VALID_RESPONSE))
    assert isinstance(result, ParsedObject)
    assert result.itinerary.title == "Trip"


@pytest.mark.parametrize("text", [PROSE, "", "   ", None])
def test_unrecoverable_text_fails_cleanly(chain, text):
    result = chain.recover(text)
    assert isinstance(result, RecoveryFailure)


@pytest.mark.parametrize("text", FIXTURES)
def test_recover_itinerary_is_total(chain, text):
    itinerary = chain.recover_itinerary(text)
    assert isinstance(itinerary, Itinerary)
    assert itinerary.items


def test_recover_itinerary_falls_back_for_prose(chain):
    itinerary = chain.recover_itinerary(PROSE)
    assert [item.reason for item in itinerary.items] == [OPTIMIZING_REASON] * 3


def test_cancelled_token_stops_recovery(chain):
    token = CancellationToken()
    token.cancel()
    result = chain.recover(TRAILING_COMMA, token)
    assert isinstance(result, RecoveryFailure)
    assert result.reason == "cancelled"
    assert result.stages_tried == ()
