import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from expansion import (
    KeywordExpander,
    LLMExpander,
    PlanningError,
    parse_year_range,
    year_bounds_ms,
)


def _ms(year, month=1, day=1):
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp() * 1000)


# -- date expressions --


def test_parse_single_year():
    assert parse_year_range("beach 2019") == ("beach", 2019, 2019)


def test_parse_decade():
    assert parse_year_range("parties in the 1990s") == ("parties in the", 1990, 1999)


def test_parse_range_any_order():
    assert parse_year_range("snow 2015-2012") == ("snow", 2012, 2015)


def test_parse_strips_dangling_preposition():
    assert parse_year_range("dogs from 2020") == ("dogs", 2020, 2020)


def test_parse_no_date():
    assert parse_year_range("red car") == ("red car", None, None)


def test_year_bounds_inclusive():
    start, end = year_bounds_ms(2019, 2020)
    assert start == _ms(2019)
    assert end == _ms(2021) - 1


# -- KeywordExpander --


def test_keyword_expander_city_and_year():
    expander = KeywordExpander(known_cities=lambda: ["York", "New York", "Paris"])
    result = expander.expand("fireworks in New York 2018")

    assert result["city"] == "New York"
    assert result["phrases"] == ["fireworks"]
    assert result["time_range"] == [_ms(2018), _ms(2019) - 1]


def test_keyword_expander_plain_query():
    result = KeywordExpander().expand("golden retriever")
    assert result == {"phrases": ["golden retriever"], "city": None, "time_range": None}


def test_keyword_expander_labels():
    labels = KeywordExpander().expand_labels("red, blue\n dogs ,,")
    assert labels == ["red", "blue", "dogs"]


# -- LLMExpander --


def _llm(handler, api_key="test-key") -> LLMExpander:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return LLMExpander(api_url="https://llm.test/v1/chat/completions", api_key=api_key, http=client)


def _reply(content: str):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})
    return handler


def test_llm_expand_maps_fields():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return _reply(json.dumps({
            "phrases": ["sunset", "orange sky"], "city": "Lisbon", "startMs": 1, "endMs": 2,
        }))(request)

    result = _llm(handler).expand("sunsets in lisbon")

    assert result == {"phrases": ["sunset", "orange sky"], "city": "Lisbon", "time_range": [1, 2]}
    assert seen["auth"] == "Bearer test-key"
    assert "sunsets in lisbon" in seen["body"]["messages"][0]["content"]


def test_llm_expand_strips_code_fence():
    content = '```json\n{"phrases": ["cat"], "city": null, "startMs": null, "endMs": null}\n```'
    result = _llm(_reply(content)).expand("cat")
    assert result == {"phrases": ["cat"], "city": None, "time_range": None}


def test_llm_non_json_raises():
    with pytest.raises(PlanningError):
        _llm(_reply("Sure! Here are some phrases")).expand("cat")


def test_llm_http_error_raises():
    def handler(request):
        return httpx.Response(500, text="upstream down")

    with pytest.raises(PlanningError):
        _llm(handler).expand("cat")


def test_llm_missing_key_raises():
    with pytest.raises(PlanningError):
        _llm(_reply("{}"), api_key="").expand("cat")


def test_llm_labels():
    labels = _llm(_reply('{"labels": ["beach", " sunset ", ""]}')).expand_labels("summer")
    assert labels == ["beach", "sunset"]
