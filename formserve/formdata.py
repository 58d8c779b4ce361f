"""Validation and typed extraction of multipart/form-data values and files."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from math import isinf
from typing import Any, Callable, Iterable, TypeVar

from formserve.errors import SentinelHttpError, wrap_error

T = TypeVar("T")

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1

_INT_RE = re.compile(r"[+-]?[0-9]+", re.ASCII)
_FLOAT_RE = re.compile(
    r"[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf(?:inity)?|nan)",
    re.ASCII | re.IGNORECASE,
)
_HEX_FLOAT_RE = re.compile(
    r"[+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)[pP][+-]?[0-9]+",
    re.ASCII,
)
_DURATION_PART_RE = re.compile(
    r"(?P<int>[0-9]*)(?:\.(?P<frac>[0-9]*))?(?P<unit>[^0-9.]*)", re.ASCII
)

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

_INCH_UNITS = (
    ("pt", Fraction(1, 72)),
    ("px", Fraction(1, 96)),
    ("in", Fraction(1)),
    ("mm", Fraction(10, 254)),
    ("cm", Fraction(100, 254)),
    ("pc", Fraction(1, 6)),
)


def parse_bool(value: str) -> bool:
    """Parse a boolean the way form fields spell them (true/false, 1/0, t/f)."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f'parsing "{value}": invalid syntax')


def _parse_int(value: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise ValueError(f'parsing "{value}": invalid syntax')
    result = int(value)
    if not _INT64_MIN <= result <= _INT64_MAX:
        raise ValueError(f'parsing "{value}": value out of range')
    return result


def _parse_float(value: str) -> float:
    if _HEX_FLOAT_RE.fullmatch(value):
        try:
            result = float.fromhex(value)
        except OverflowError:
            raise ValueError(f'parsing "{value}": value out of range') from None
        return result
    if not _FLOAT_RE.fullmatch(value):
        raise ValueError(f'parsing "{value}": invalid syntax')
    result = float(value)
    if isinf(result) and "inf" not in value.lower():
        raise ValueError(f'parsing "{value}": value out of range')
    return result


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "300ms", "1.5h" or "2h45m".

    Valid units are ns, us (or µs), ms, s, m and h. Precision below one
    microsecond is truncated.
    """
    invalid = ValueError(f'time: invalid duration "{value}"')
    rest = value
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise invalid

    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART_RE.match(rest, pos)
        if match is None or match.end() == pos:
            raise invalid
        whole, frac, unit = match.group("int"), match.group("frac") or "", match.group("unit")
        if not whole and not frac:
            raise invalid
        if not unit:
            raise ValueError(f'time: missing unit in duration "{value}"')
        if unit not in _DURATION_UNITS:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{value}"')
        amount = Fraction(int(whole or "0"))
        if frac:
            amount += Fraction(int(frac), 10 ** len(frac))
        total += amount * _DURATION_UNITS[unit]
        if total > (1 << 63):
            raise invalid
        pos = match.end()

    nanoseconds = int(total)
    if not negative and nanoseconds > _INT64_MAX:
        raise invalid
    microseconds = nanoseconds // 1_000
    return timedelta(microseconds=-microseconds if negative else microseconds)


def _ext(name: str) -> str:
    base = name.rsplit("/", 1)[-1]
    index = base.rfind(".")
    return base[index:] if index >= 0 else ""


def _natural_key(text: str) -> list[Any]:
    parts = re.split(r"([0-9]+)", text)
    return [int(part) if odd else part for odd, part in zip(_alternating(), parts)]


def _alternating() -> Iterable[bool]:
    while True:
        yield False
        yield True


class _FormErrors(Exception):
    """All the errors gathered while reading a form."""

    def __init__(self, errors: list[Exception]) -> None:
        super().__init__("; ".join(str(err) for err in errors))
        self.errors = list(errors)


@dataclass
class FormData:
    """Typed access to form values and files, gathering errors as it goes.

    Reading methods return the value (or a fallback) and record problems in
    ``errors``; call :meth:`validate` once done to raise them all.
    """

    values: dict[str, list[str]] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    errors: list[Exception] = field(default_factory=list)

    def validate(self) -> None:
        """Raise a wrapped 400 error if any problem was recorded."""
        if not self.errors:
            return
        combined = _FormErrors(self.errors)
        raise wrap_error(
            combined, SentinelHttpError(400, f"Invalid form data: {combined}")
        )

    # Scalar values.

    def string(self, key: str, default: str) -> str:
        return self._optional(key, default, str, "")

    def mandatory_string(self, key: str) -> str:
        return self._mandatory(key, str, "")

    def boolean(self, key: str, default: bool) -> bool:
        return self._optional(key, default, parse_bool, False)

    def mandatory_boolean(self, key: str) -> bool:
        return self._mandatory(key, parse_bool, False)

    def integer(self, key: str, default: int) -> int:
        return self._optional(key, default, _parse_int, 0)

    def mandatory_integer(self, key: str) -> int:
        return self._mandatory(key, _parse_int, 0)

    def float(self, key: str, default: float) -> float:
        return self._optional(key, default, _parse_float, 0.0)

    def mandatory_float(self, key: str) -> float:
        return self._mandatory(key, _parse_float, 0.0)

    def duration(self, key: str, default: timedelta) -> timedelta:
        return self._optional(key, default, parse_duration, timedelta(0))

    def mandatory_duration(self, key: str) -> timedelta:
        return self._mandatory(key, parse_duration, timedelta(0))

    def inches(self, key: str, default: float) -> float:
        """Read a length (pt, px, in, mm, cm, pc or unitless inches) as inches."""
        raw = self._lookup(key)
        if raw is None:
            return default
        return self._convert(key, raw, self._to_inches, 0.0)

    def mandatory_inches(self, key: str) -> float:
        return self._mandatory(key, self._to_inches, 0.0)

    # Custom values.

    def custom(self, key: str, assign: Callable[[str], T]) -> T | None:
        """Pass the raw value ("" if absent) to ``assign`` and return its result.

        ``assign`` reports an invalid value by raising ValueError or TypeError.
        """
        return self._apply(key, self.string(key, ""), assign)

    def mandatory_custom(self, key: str, assign: Callable[[str], T]) -> T | None:
        value = self.mandatory_string(key)
        if value == "":
            return None
        return self._apply(key, value, assign)

    # Files.

    def path(self, filename: str) -> str | None:
        """Return the stored path of a form file, matching its extension
        case-insensitively."""
        for name, path in self.files.items():
            ext = _ext(name)
            lowered = name[: len(name) - len(ext)] + ext.lower()
            if filename in (name, lowered):
                return path
        return None

    def mandatory_path(self, filename: str) -> str | None:
        path = self.path(filename)
        if path is None:
            self.errors.append(ValueError(f"form file '{filename}' is required"))
        return path

    def content(self, filename: str, default: str) -> str:
        path = self.path(filename)
        if path is None:
            return default
        return self._read(path, filename)

    def mandatory_content(self, filename: str) -> str:
        path = self.mandatory_path(filename)
        if path is None:
            return ""
        return self._read(path, filename)

    def paths(self, extensions: Iterable[str] | None) -> list[str]:
        """Return, in natural order, the paths of files with the given
        extensions (compared in lower case)."""
        wanted = list(extensions or [])
        found = [
            path
            for name, path in self.files.items()
            for ext in wanted
            if _ext(name).lower() == ext
        ]
        return sorted(found, key=_natural_key)

    def mandatory_paths(self, extensions: Iterable[str] | None) -> list[str]:
        wanted = list(extensions or [])
        found = self.paths(wanted)
        if not found:
            self.errors.append(
                ValueError(f"no form file found for extensions: [{' '.join(wanted)}]")
            )
        return found

    # Helpers.

    def _lookup(self, key: str) -> str | None:
        values = self.values.get(key)
        if not values or values[0] == "":
            return None
        return values[0]

    def _optional(self, key: str, default: T, parse: Callable[[str], T], zero: T) -> T:
        raw = self._lookup(key)
        if raw is None:
            return default
        return self._convert(key, raw, parse, zero)

    def _mandatory(self, key: str, parse: Callable[[str], T], zero: T) -> T:
        raw = self._lookup(key)
        if raw is None:
            self.errors.append(ValueError(f"form field '{key}' is required"))
            return zero
        return self._convert(key, raw, parse, zero)

    def _convert(self, key: str, raw: str, parse: Callable[[str], T], zero: T) -> T:
        try:
            return parse(raw)
        except ValueError as err:
            self._invalid(key, raw, err)
            return zero

    def _apply(self, key: str, value: str, assign: Callable[[str], T]) -> T | None:
        try:
            return assign(value)
        except (ValueError, TypeError) as err:
            self._invalid(key, value, err)
            return None

    def _invalid(self, key: str, value: str, err: Exception) -> None:
        error = ValueError(
            f"form field '{key}' is invalid (got '{value}', resulting to {err})"
        )
        error.__cause__ = err
        self.errors.append(error)

    @staticmethod
    def _to_inches(value: str) -> float:
        for unit, factor in _INCH_UNITS:
            if value.endswith(unit):
                number = _parse_float(value[: -len(unit)])
                return number * float(factor) if unit != "in" else number
        return _parse_float(value)

    def _read(self, path: str, filename: str) -> str:
        try:
            with open(path, "rb") as handle:
                return handle.read().decode("utf-8", errors="replace")
        except OSError as err:
            error = ValueError(f"form file '{filename}' is invalid ({err})")
            error.__cause__ = err
            self.errors.append(error)
            return ""