import pytest

from chat_relay.agent.structured import (
    StructuredOutput,
    extract_structured,
    parse_structured_output,
    structured_output_schema,
)
from chat_relay.errors import StructuredParseFailure


def test_parse_plain_json():
    out = parse_structured_output('{"result": "Hello", "frontend_tool_call": null}')
    assert out == StructuredOutput(result="Hello")


def test_parse_directive():
    out = parse_structured_output(
        '{"result": "Sending", "frontend_tool_call": '
        '{"tool_name": "login_user_start", "tool_args": {"email": "a@b.co", "code": null}}}'
    )
    assert out.frontend_tool_call.tool_name == "login_user_start"
    assert out.frontend_tool_call.tool_args.email == "a@b.co"


def test_parse_embedded_in_prose():
    text = 'Sure thing.\n{"result": "Done", "frontend_tool_call": null}\nAnything else?'
    assert parse_structured_output(text).result == "Done"


def test_parse_rejects_unknown_tool():
    with pytest.raises(StructuredParseFailure):
        parse_structured_output(
            '{"result": "x", "frontend_tool_call": {"tool_name": "rm_rf", "tool_args": {}}}'
        )


def test_parse_rejects_extra_keys():
    with pytest.raises(StructuredParseFailure):
        parse_structured_output('{"result": "x", "frontend_tool_call": null, "mood": "happy"}')


def test_parse_rejects_plain_text():
    with pytest.raises(StructuredParseFailure):
        parse_structured_output("just words")


def test_extract_prefers_candidate_with_directive():
    text = (
        '{"result": "first", "frontend_tool_call": null} then '
        '{"result": "second", "frontend_tool_call": {"tool_name": "login_user_resend", "tool_args": {}}}'
    )
    found = extract_structured(text)
    assert found["result"] == "second"


def test_extract_falls_back_to_first_candidate():
    text = '{"result": "one", "frontend_tool_call": null} {"result": "two", "frontend_tool_call": null}'
    assert extract_structured(text)["result"] == "one"


def test_extract_ignores_braces_in_strings():
    text = 'prefix {"result": "use {curly} } braces", "frontend_tool_call": null} suffix'
    assert extract_structured(text)["result"] == "use {curly} } braces"


def test_extract_skips_objects_without_result():
    text = '{"foo": 1} and {"result": "yes"}'
    assert extract_structured(text) == {"result": "yes"}


def test_extract_finds_inner_object_when_outer_is_unclosed():
    text = '{ broken {"result": "inner", "frontend_tool_call": null}'
    assert extract_structured(text)["result"] == "inner"


@pytest.mark.parametrize("text", ["", "no braces here", '{"result": "partial', "{not json}"])
def test_extract_returns_none(text):
    assert extract_structured(text) is None


def test_schema_lists_tool_names():
    schema = structured_output_schema()
    assert "result" in schema["properties"]
    assert "login_user_verify" in str(schema)


def test_extract_over_every_streamed_prefix():
    body = (
        '{"result": "Code sent {check} your \\"inbox\\"", "frontend_tool_call": '
        '{"tool_name": "login_user_start", "tool_args": {"email": "a@b.co", "code": null}}}'
    )
    text = "Sure. " + body + " Anything else?"
    complete_at = text.index(body) + len(body)

    seen = [extract_structured(text[:i]) for i in range(len(text) + 1)]

    assert all(found is None for found in seen[:complete_at])
    final = extract_structured(text)
    assert final["frontend_tool_call"]["tool_name"] == "login_user_start"
    assert final["result"] == 'Code sent {check} your "inbox"'
    assert all(found == final for found in seen[complete_at:])
    assert extract_structured(text) == final
    for i in range(len(text) + 1):
        try:
            parse_structured_output(text[:i])
        except StructuredParseFailure:
            pass
