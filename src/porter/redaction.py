"""Row redaction: replaces omitted column values with synthetic look-alikes."""

import re
from collections.abc import Callable
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional

import structlog
from faker import Faker

from porter.policy import EntityPolicy
from utils.logging import get_logger

MIN_SECRET_LENGTH = 16

# Checked in order; first match wins. Tokens come from snake_case/camelCase splitting.
NAME_CATEGORIES: list[tuple[str, frozenset[str]]] = [
    ("password", frozenset({"password", "passwd", "pwd", "pass"})),
    ("token", frozenset({"token", "secret", "apikey", "hash", "salt", "otp", "nonce"})),
    ("email", frozenset({"email", "mail"})),
    ("url", frozenset({"url", "uri", "website", "homepage", "link", "avatar"})),
    ("phone", frozenset({"phone", "mobile", "tel", "telephone", "fax", "cell"})),
    ("first_name", frozenset({"firstname", "givenname", "forename"})),
    ("last_name", frozenset({"lastname", "surname", "familyname"})),
    ("username", frozenset({"username", "login", "nickname", "handle"})),
    ("name", frozenset({"name", "fullname", "contact"})),
    ("street", frozenset({"address", "street", "addr"})),
    ("city", frozenset({"city", "town"})),
    ("postcode", frozenset({"zip", "zipcode", "postcode", "postal"})),
    ("country", frozenset({"country"})),
    ("company", frozenset({"company", "organization", "organisation", "employer"})),
    ("ip", frozenset({"ip", "ipaddress"})),
    ("date", frozenset({"date", "at", "dob", "birthday", "birthdate", "timestamp"})),
    ("text", frozenset({"description", "comment", "note", "notes", "bio", "body", "content", "message", "summary"})),
    ("word", frozenset({"title", "label", "tag", "slug", "word", "keyword"})),
]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def column_tokens(column: str) -> frozenset[str]:
    """Split ``createdAt`` / ``api_key`` / ``e-mail`` into lowercase tokens.

    The joined form is included too, so ``first_name`` also yields ``firstname``.
    """
    spaced = _CAMEL_BOUNDARY.sub("_", column)
    parts = [p for p in re.split(r"[^A-Za-z0-9]+", spaced.lower()) if p]
    tokens = set(parts)
    tokens.add("".join(parts))
    return frozenset(tokens)


def categorize_column(column: str) -> Optional[str]:
    """Return the generator category suggested by a column name, if any."""
    tokens = column_tokens(column)
    for category, markers in NAME_CATEGORIES:
        if tokens & markers:
            return category
    return None


class RowTransformer:
    """Applies an EntityPolicy to single rows. Pure apart from the Faker RNG."""

    def __init__(
        self,
        locale: Optional[str] = None,
        seed: Optional[int] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize row transformer.

        Args:
            locale: Faker locale (None for Faker's default)
            seed: Optional seed for reproducible output
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("redaction")
        self.faker = Faker(locale) if locale else Faker()
        if seed is not None:
            self.faker.seed_instance(seed)
        self._category_cache: dict[str, Optional[str]] = {}
        self._generators = self._name_generators()

    def transform(
        self,
        policy: EntityPolicy,
        row: dict[str, Any],
        primary_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """Return the row with omitted columns replaced, or unchanged if retained.

        Args:
            policy: Policy of the row's table (never an ignored one)
            row: Column -> value mapping, in column order
            primary_key: Primary key column, used for the retention check

        Returns:
            The input row when nothing needs redacting, otherwise a new dict with
            the same columns in the same order
        """
        if not policy.omitted_columns:
            return row

        pk_value = row.get(primary_key) if primary_key else None
        if policy.is_retained(pk_value):
            return row

        redacted = dict(row)
        for column in policy.omitted_columns:
            if column not in redacted or column == primary_key:
                continue
            original = redacted[column]
            if original is None:
                continue
            redacted[column] = self.synthesize(column, original)

        return redacted

    def synthesize(self, column: str, original: Any) -> Any:
        """Generate a value shaped like ``original`` for ``column``."""
        if column not in self._category_cache:
            self._category_cache[column] = categorize_column(column)
        category = self._category_cache[column]

        if category == "date" and isinstance(original, (datetime, date, time, str)):
            return self._date_like(original)
        if category and isinstance(original, str):
            generator = self._generators.get(category)
            if generator is not None:
                return generator(original)

        return self._by_type(original)

    def _name_generators(self) -> dict[str, Callable[[str], Any]]:
        fake = self.faker
        return {
            "password": lambda orig: fake.password(
                length=max(MIN_SECRET_LENGTH, len(orig)), special_chars=False
            ),
            "token": lambda orig: fake.pystr(
                min_chars=max(MIN_SECRET_LENGTH, len(orig)),
                max_chars=max(MIN_SECRET_LENGTH, len(orig)),
            ),
            "email": lambda orig: fake.email(),
            "url": lambda orig: fake.url(),
            "phone": lambda orig: fake.phone_number(),
            "first_name": lambda orig: fake.first_name(),
            "last_name": lambda orig: fake.last_name(),
            "username": lambda orig: fake.user_name(),
            "name": lambda orig: fake.name(),
            "street": lambda orig: fake.street_address(),
            "city": lambda orig: fake.city(),
            "postcode": lambda orig: fake.postcode(),
            "country": lambda orig: fake.country(),
            "company": lambda orig: fake.company(),
            "ip": lambda orig: fake.ipv4(),
            "text": lambda orig: fake.text(max_nb_chars=max(20, min(len(orig), 200))),
            "word": lambda orig: fake.word(),
        }

    def _date_like(self, original: Any) -> Any:
        if isinstance(original, datetime):
            return self.faker.date_time(tzinfo=original.tzinfo)
        if isinstance(original, date):
            return self.faker.date_object()
        if isinstance(original, time):
            return self.faker.time_object()
        # String dates keep their rough shape: date-only vs. date and time
        if len(original) <= 10:
            return self.faker.date()
        return self.faker.date_time().strftime("%Y-%m-%d %H:%M:%S")

    def _by_type(self, original: Any) -> Any:
        fake = self.faker
        # bool first: it is a subclass of int
        if isinstance(original, bool):
            return fake.pybool()
        if isinstance(original, int):
            digits = max(2, len(str(abs(original))))
            upper = 10**digits - 1
            lower = -upper if original < 0 else 0
            return fake.random_int(min=lower, max=upper)
        if isinstance(original, float):
            return fake.pyfloat(
                left_digits=max(1, len(str(int(abs(original))))),
                right_digits=2,
                positive=original >= 0,
            )
        if isinstance(original, Decimal):
            exponent = original.as_tuple().exponent
            right_digits = -exponent if isinstance(exponent, int) and exponent < 0 else 0
            left_digits = max(1, len(str(int(abs(original)))))
            return fake.pydecimal(
                left_digits=left_digits,
                right_digits=right_digits,
                positive=original >= 0,
            )
        if isinstance(original, (datetime, date, time)):
            return self._date_like(original)
        if isinstance(original, str):
            return fake.word()
        if isinstance(original, (bytes, bytearray)):
            return fake.binary(length=max(1, len(original)))
        return fake.text(max_nb_chars=50)
