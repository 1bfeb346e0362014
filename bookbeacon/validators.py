import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 validator with checksum support.

    Catalog lookups always go through ``normalize_isbn`` so that
    ``978-0-13-468609-7`` and ``9780134686097`` address the same book.
    """

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # weighted 10..1 checksum
            total = 0
            for i, ch in enumerate(s[:-1]):
                if not ch.isdigit():
                    return False
                total += (10 - i) * int(ch)
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class TextValidator:
    """Basic text validations for member and book fields."""

    @staticmethod
    def is_non_empty(text: Optional[str]) -> bool:
        return text is not None and bool(text.strip())

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        # must not be digits only
        if not TextValidator.is_non_empty(name):
            return False
        return not name.strip().isdigit()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if not TextValidator.is_non_empty(email):
            return False
        return bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()
