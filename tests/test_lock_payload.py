import pytest

from tfbackend.errors import LockParseError, MissingFieldError, ParseError
from tfbackend.lock_payload import LockInfo, parse_lock_id


GOOD_LOCK = b"""{"ID":"ebd786a4-fb72-f8ad-9705-d6ba623552c2",
  "Operation":"OperationTypeApply",
  "Info":"",
  "Who":"mark@fry",
  "Version":"1.0.1",
  "Created":"2021-07-12T17:29:27.616435429Z",
  "Path":""}"""

BAD_JSON_LOCK = b"""{"ID:"ebd786a4-fb72-f8ad-9705-d6ba623552c2",
  "Operation":"OperationTypeApply"}"""

NO_ID_LOCK = b"""{"Operation":"OperationTypeApply",
  "Info":"",
  "Who":"mark@fry"}"""


def test_parse_lock_id_returns_holder():
    assert parse_lock_id(GOOD_LOCK) == "ebd786a4-fb72-f8ad-9705-d6ba623552c2"


def test_parse_lock_id_rejects_invalid_json():
    with pytest.raises(ParseError):
        parse_lock_id(BAD_JSON_LOCK)


def test_parse_lock_id_rejects_empty_payload():
    with pytest.raises(ParseError):
        parse_lock_id(b"")


def test_parse_lock_id_reports_missing_field():
    with pytest.raises(MissingFieldError) as excinfo:
        parse_lock_id(NO_ID_LOCK)

    assert excinfo.value.field == "ID"
    assert 'error parsing "ID" from' in str(excinfo.value)


@pytest.mark.parametrize("raw", [b'["ID"]', b'"ID"', b"42", b'{"ID": 7}'])
def test_parse_lock_id_rejects_unexpected_shapes(raw):
    with pytest.raises(LockParseError):
        parse_lock_id(raw)


def test_lock_info_keeps_known_and_unknown_fields():
    info = LockInfo.from_bytes(b'{"ID":"x","Who":"ci@runner","Retries":3}')

    assert info.id == "x"
    assert info.who == "ci@runner"
    assert info.operation is None
    assert info.extra == {"Retries": 3}


def test_lock_info_parses_full_envelope():
    info = LockInfo.from_bytes(GOOD_LOCK)

    assert info.operation == "OperationTypeApply"
    assert info.version == "1.0.1"
    assert info.created == "2021-07-12T17:29:27.616435429Z"
    assert info.path == ""
    assert info.extra == {}
