from lkmedia.attributes import attribute_changes


def test_attribute_changes():
    diff = attribute_changes({"a": "1", "b": "2"}, {"a": "2", "c": "3"})
    assert diff == {"a": "2", "b": "", "c": "3"}


def test_unchanged_attributes_give_empty_diff():
    assert attribute_changes({"a": "1"}, {"a": "1"}) == {}


def test_missing_maps_are_treated_as_empty():
    assert attribute_changes(None, {"a": "1"}) == {"a": "1"}
    assert attribute_changes({"a": "1"}, None) == {"a": ""}