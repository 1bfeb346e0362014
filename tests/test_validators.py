import pytest

from bookbeacon.validators import ISBNValidator, TextValidator


@pytest.mark.parametrize("isbn", ["9780134686097", "978-0-13-468609-7", "0306406152", "0-8044-2957-X"])
def test_valid_isbns(isbn):
    assert ISBNValidator.is_valid_isbn(isbn)


@pytest.mark.parametrize("isbn", ["", None, "12345", "1234567890", "9780134686098", "97801346860ab"])
def test_invalid_isbns(isbn):
    assert not ISBNValidator.is_valid_isbn(isbn)


def test_normalize_isbn():
    assert ISBNValidator.normalize_isbn(" 0-8044-2957-x ") == "080442957X"
    assert ISBNValidator.normalize_isbn(None) == ""


def test_email_validation():
    assert TextValidator.validate_email("reader@example.com")
    assert not TextValidator.validate_email("reader@")
    assert not TextValidator.validate_email("   ")
    assert TextValidator.normalize_email(" Reader@Example.COM ") == "reader@example.com"


def test_name_validation():
    assert TextValidator.validate_name("Ada Lovelace")
    assert not TextValidator.validate_name("12345")
    assert not TextValidator.validate_name("")
