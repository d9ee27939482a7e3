import pytest

from app.services.scan.parsing import parse_json_array, parse_json_object


def test_parse_object_tolerates_fences_and_prose():
    fenced = '```json\n{"keywords": ["solar"]}\n```'
    prose = 'Sure! Here you go: {"keywords": ["pump"]} Hope that helps.'

    assert parse_json_object(fenced) == {"keywords": ["solar"]}
    assert parse_json_object(prose) == {"keywords": ["pump"]}


def test_parse_object_rejects_missing_object():
    with pytest.raises(ValueError):
        parse_json_object("no json here")


@pytest.mark.parametrize(
    "raw",
    [
        '[{"name": "A"}]',
        '{"candidates": [{"name": "A"}]}',
        '{"innovations": [{"name": "A"}], "note": "x"}',
        '{"whatever": [{"name": "A"}]}',
        'Results below:\n[{"name": "A"}]\nend',
    ],
)
def test_parse_array_accepts_common_shapes(raw):
    assert parse_json_array(raw) == [{"name": "A"}]


def test_parse_array_rejects_ambiguous_object():
    with pytest.raises(ValueError):
        parse_json_array('{"a": [1], "b": [2]}')


def test_parse_array_rejects_text_without_array():
    with pytest.raises(ValueError):
        parse_json_array("I could not find anything relevant.")
