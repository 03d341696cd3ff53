from botflow.validation_errors import ValidationError, format_errors, normalize_errors


def test_flat_objects_with_aliases():
    errors = normalize_errors([
        {"node": "12", "error_type": "routing", "fieldName": "Next Nodes", "description": "Node 99 not found"},
    ])
    assert errors == [ValidationError(12, "routing", "Next Nodes", "Node 99 not found")]


def test_plain_strings_are_not_row_addressed():
    errors = normalize_errors(["Version is locked"])
    assert errors[0].node_number is None
    assert not errors[0].is_row_addressed
    assert errors[0].format() == "Document: Version is locked"


def test_single_object_payload():
    errors = normalize_errors({"message": "Bot is read-only"})
    assert len(errors) == 1
    assert errors[0].message == "Bot is read-only"


def test_nested_pairing_with_bare_messages():
    errors = normalize_errors([[7, ["something broke"]], [8, [["c", "Intent", "bad intent"]]]])
    assert [(e.node_number, e.message) for e in errors] == [(7, "something broke"), (8, "bad intent")]


def test_empty_payloads():
    assert normalize_errors(None) == []
    assert normalize_errors([]) == []
    assert normalize_errors({"errors": []}) == []


def test_format_and_to_dict():
    e = ValidationError(105, "content", "Message", "Too long", field_entry="abc")
    assert format_errors([e]) == ["Node 105: [Message] Too long"]
    assert e.to_dict() == {
        "nodeIdentifier": 105,
        "category": "content",
        "field": "Message",
        "message": "Too long",
        "fieldEntry": "abc",
    }
