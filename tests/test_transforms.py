import copy

import pytest

from mirrorsync.engine.transforms import FieldTransformer, encode_keys
from mirrorsync.exceptions import TransformError
from mirrorsync.models.mapping import Mapping


def _transform(data, as_list=False, **fields):
    return FieldTransformer().transform(Mapping(id="m", **fields), data, as_list=as_list)


def test_exact_path_copies_value():
    result = _transform({"user": {"name": "Ada", "age": 36}}, mapping={"name": "user.name"})
    assert result == {"name": "Ada"}


def test_bool_cast_of_yes():
    result = _transform({"is_active": "yes"}, mapping={"active": "is_active"}, cast={"active": ["bool"]})
    assert result == {"active": True}


def test_unset_with_pass_through():
    result = _transform(
        {"id": 1, "name": "Ada", "password": "secret"},
        passThrough=True,
        unset=["password"],
    )
    assert result == {"id": 1, "name": "Ada"}


def test_root_key_unwraps_output():
    result = _transform({"items": [1, 2, 3]}, mapping={"#": "items"})
    assert result == [1, 2, 3]


def test_root_key_is_kept_next_to_other_keys():
    result = _transform({"items": [1], "id": 5}, mapping={"#": "items", "id": "id"})
    assert result == {"#": [1], "id": 5}


def test_input_is_never_modified():
    data = {"user": {"name": "Ada", "tags": ["a", "b"]}, "a.b": 1}
    original = copy.deepcopy(data)

    result = _transform(
        data,
        passThrough=True,
        mapping={"user.tags": "user.tags", "count": 2},
        unset=["user.name"],
        cast={"count": "string"},
    )
    result["user"]["tags"].append("c")

    assert data == original


def test_same_input_gives_same_output():
    mapping = Mapping(id="m", mapping={"name": "user.name", "greeting": "Hello {{ user.name }}"})
    transformer = FieldTransformer()
    data = {"user": {"name": "Ada"}}
    assert transformer.transform(mapping, data) == transformer.transform(mapping, data)


def test_pass_through_keeps_unmapped_fields():
    result = _transform({"id": 1, "extra": {"deep": True}}, passThrough=True, mapping={"title": "id"})
    assert result == {"id": 1, "extra": {"deep": True}, "title": 1}


def test_without_pass_through_only_mapped_fields_survive():
    result = _transform({"id": 1, "extra": True}, mapping={"title": "id"})
    assert result == {"title": 1}


def test_absent_path_renders_as_literal_text():
    result = _transform({"id": 1}, mapping={"id": "id", "name": "user.name"})
    assert result == {"id": 1, "name": "user.name"}


def test_bare_words_are_literal_constants():
    result = _transform(
        {"user": {"name": "Ann"}},
        mapping={"name": "user.name", "type": "person", "country": "NL"},
    )
    assert result == {"name": "Ann", "type": "person", "country": "NL"}


def test_existing_key_wins_over_literal():
    result = _transform({"type": "robot"}, mapping={"kind": "type"})
    assert result == {"kind": "robot"}


def test_nested_output_paths_are_created():
    result = _transform({"city": "Paris"}, mapping={"address.city": "city", "address.country": "FR code"})
    assert result == {"address": {"city": "Paris", "country": "FR code"}}


def test_template_expression():
    result = _transform({"first": "Ada", "last": "Lovelace"}, mapping={"full": "{{ first }} {{ last }}"})
    assert result == {"full": "Ada Lovelace"}


def test_single_placeholder_keeps_type():
    result = _transform({"tags": ["x", "y"]}, mapping={"labels": "{{ tags }}"})
    assert result == {"labels": ["x", "y"]}


def test_constants():
    result = _transform({}, mapping={"version": 2, "enabled": False, "meta": {"source": "crm"}})
    assert result == {"version": 2, "enabled": False, "meta": {"source": "crm"}}


def test_dotted_input_keys_survive_pass_through():
    result = _transform({"file.name": "report.pdf"}, passThrough=True)
    assert result == {"file.name": "report.pdf"}


def test_dotted_input_keys_can_be_addressed():
    result = _transform({"file.name": "report.pdf"}, mapping={"name": "file&#46;name"})
    assert result == {"name": "report.pdf"}


def test_cast_on_missing_key_does_not_create_it():
    result = _transform({"id": 1}, mapping={"id": "id"}, cast={"price": ["int"]})
    assert result == {"id": 1}


def test_casts_apply_in_order():
    result = _transform({"price": "12.50 EUR"}, mapping={"price": "price"}, cast={"price": "float,string"})
    assert result == {"price": "12.5"}


def test_unset_then_cast_sees_removed_key():
    result = _transform({"a": "1"}, passThrough=True, unset=["a"], cast={"a": ["int"]})
    assert result == {}


def test_unbalanced_template_is_rejected():
    with pytest.raises(TransformError):
        Mapping(id="broken", mapping={"name": "{{ user.name }"})


def test_invalid_cast_configuration_is_rejected():
    with pytest.raises(TransformError):
        _transform({"a": 1}, mapping={"a": "a"}, cast={"a": [1]})


def test_list_mode_maps_every_entry():
    result = _transform([{"n": 1}, {"n": 2}], as_list=True, mapping={"number": "n"})
    assert result == [{"number": 1}, {"number": 2}]


def test_list_mode_merges_extra_values():
    data = {"listInput": [{"n": 1}, {"n": 2, "shared": "own"}], "shared": "common"}
    result = _transform(data, as_list=True, mapping={"number": "n", "shared": "shared"})
    assert result == [{"number": 1, "shared": "common"}, {"number": 2, "shared": "own"}]


def test_list_mode_scalar_entries_become_value():
    result = _transform({"listInput": ["a", "b"]}, as_list=True, mapping={"letter": "value"})
    assert result == [{"letter": "a"}, {"letter": "b"}]


def test_list_mode_keeps_dictionary_keys():
    result = _transform({"x": {"n": 1}, "y": {"n": 2}}, as_list=True, mapping={"number": "n"})
    assert result == {"x": {"number": 1}, "y": {"number": 2}}


def test_list_mode_rejects_scalars():
    with pytest.raises(TransformError):
        _transform({"listInput": "nope"}, as_list=True, mapping={"a": "a"})


def test_encode_keys_is_recursive():
    data = {"a.b": [{"c.d": 1}], "plain": {"e.f": 2}}
    assert encode_keys(data, ".", "&#46;") == {"a&#46;b": [{"c&#46;d": 1}], "plain": {"e&#46;f": 2}}
