"""
Department string validation and parsing.

Department attributes encode a taxonomy in the form
``"12345 Department Name - USA"``: a five digit department number, free text
name, and a three letter country code. This module validates that format and
splits a department string into its components.
"""

import re
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# 5-digit number + space + 1-char name + " - " + 3-letter code
MIN_DEPARTMENT_LENGTH = 13

DEPARTMENT_PATTERN = re.compile(r'^[0-9]{5}\s+.+\s+-\s+[A-Z]{3}$')

_NUMBER_PATTERN = re.compile(r'^[0-9]{5}$')
_COUNTRY_CODE_PATTERN = re.compile(r'^[A-Z]{3}$')

NUMBER_LENGTH = 5
COUNTRY_CODE_LENGTH = 3
SEPARATOR = '-'


class DepartmentError(Exception):
    """Base exception for department string problems."""

    def __init__(self, department, reason: str):
        self.department = department
        self.reason = reason
        super().__init__(f"{reason}: {department!r}")


class FormatError(DepartmentError):
    """Raised when a department string does not have the expected format."""
    pass


class ParseError(DepartmentError):
    """Raised when a department string cannot be split into its components."""
    pass


@dataclass(frozen=True)
class ParsedDepartment:
    """Structured fields extracted from a department string."""

    number: str
    name: str
    country_code: str


def validate_department(department: str, min_length: int = MIN_DEPARTMENT_LENGTH) -> None:
    """
    Validate that a department string follows ``NNNNN Name - CCC``.

    Args:
        department: Raw department attribute value
        min_length: Shortest acceptable string length

    Raises:
        FormatError: If the string is too short or does not match the pattern
    """
    if not isinstance(department, str):
        raise FormatError(department, "not a string")

    if len(department) < min_length:
        raise FormatError(department, "too short")

    if not DEPARTMENT_PATTERN.fullmatch(department):
        raise FormatError(department, "pattern mismatch")


def is_valid_department(department: str, min_length: int = MIN_DEPARTMENT_LENGTH) -> bool:
    """Return True if the department string passes validation."""
    try:
        validate_department(department, min_length)
    except FormatError:
        return False
    return True


def parse_department(department: str) -> ParsedDepartment:
    """
    Split a validated department string into number, name and country code.

    The string is expected to have passed :func:`validate_department`, but
    every extraction is still bounds checked so a bad input raises
    :class:`ParseError` instead of an unrelated exception.

    Args:
        department: Department string such as ``"10023 Accounts Payable - USA"``

    Returns:
        ParsedDepartment with the extracted fields

    Raises:
        ParseError: If any component is missing or malformed
    """
    if not isinstance(department, str):
        raise ParseError(department, "not a string")

    if len(department) < NUMBER_LENGTH + COUNTRY_CODE_LENGTH:
        raise ParseError(department, "too short")

    number = department[:NUMBER_LENGTH]
    if not _NUMBER_PATTERN.fullmatch(number):
        raise ParseError(department, "invalid department number")

    country_code = department[-COUNTRY_CODE_LENGTH:]
    if not _COUNTRY_CODE_PATTERN.fullmatch(country_code):
        raise ParseError(department, "invalid country code")

    # Everything between the number and the code: " Name - "
    middle = department[NUMBER_LENGTH:len(department) - COUNTRY_CODE_LENGTH]
    if len(middle) <= 0:
        raise ParseError(department, "empty name")

    if not middle[0].isspace():
        raise ParseError(department, "missing separator after department number")

    span = middle.strip()
    if not span.endswith(SEPARATOR):
        raise ParseError(department, "missing separator before country code")

    name = span[:-len(SEPARATOR)].strip()
    if not name:
        raise ParseError(department, "empty name")

    parsed = ParsedDepartment(number=number, name=name, country_code=country_code)
    logger.debug(f"Parsed department {department!r} -> {parsed}")
    return parsed
