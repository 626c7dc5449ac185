from app.modules.provisioning.domain.patch_value import (
    ArrayValue,
    ObjectValue,
    Scalar,
    decode_embedded_object,
    to_patch_value,
    to_plain,
)


def test_json_tree_is_tagged_by_kind():
    value = to_patch_value({"displayName": "Eng", "members": [{"value": "U1"}], "active": None})

    assert isinstance(value, ObjectValue)
    assert value.fields["displayName"] == Scalar("Eng")
    assert value.fields["active"].is_null
    members = value.fields["members"]
    assert isinstance(members, ArrayValue)
    assert members.items == (ObjectValue({"value": Scalar("U1")}),)


def test_to_plain_restores_the_original_tree():
    raw = {"a": [1, 2.5, True, None, {"b": "c"}]}

    assert to_plain(to_patch_value(raw)) == raw


def test_embedded_json_object_is_decoded():
    decoded = decode_embedded_object(Scalar('{"displayName": "Ops"}'))

    assert decoded == ObjectValue({"displayName": Scalar("Ops")})


def test_non_object_strings_are_left_alone():
    for text in ("plain", "[1, 2]", "{broken", '"{}"'):
        assert decode_embedded_object(Scalar(text)) == Scalar(text)
    assert decode_embedded_object(Scalar(5)) == Scalar(5)
