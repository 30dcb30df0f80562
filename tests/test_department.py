#!/usr/bin/env python3
"""
Unit tests for department string validation and parsing.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ddg_sync.department import (
    FormatError, ParseError, ParsedDepartment, MIN_DEPARTMENT_LENGTH,
    validate_department, is_valid_department, parse_department
)


class TestValidateDepartment(unittest.TestCase):
    """Test cases for validate_department."""

    def test_valid_department(self):
        """Well formed strings pass."""
        for department in ['10023 Accounts Payable - USA',
                           '12345 Finance - USA',
                           '00001 R - GBR',
                           '54321   Research  and  Development   -   DEU']:
            with self.subTest(department=department):
                validate_department(department)
                self.assertTrue(is_valid_department(department))

    def test_too_short(self):
        """Strings under the minimum length fail before pattern matching."""
        for department in ['', '12345', '12345 A - US', 'x' * (MIN_DEPARTMENT_LENGTH - 1)]:
            with self.subTest(department=department):
                with self.assertRaises(FormatError) as ctx:
                    validate_department(department)
                self.assertEqual(ctx.exception.reason, "too short")

    def test_minimum_length_string(self):
        """A 13 character string with a one letter name is accepted."""
        department = '12345 A - USA'
        self.assertEqual(len(department), 13)
        validate_department(department)

    def test_pattern_mismatch(self):
        """Strings of adequate length but wrong shape fail."""
        invalid = [
            '1234 Finance - USA',
            '123456 Finance - USA',
            'ABCDE Finance - USA',
            '12345 Finance - usa',
            '12345 Finance - US',
            '12345 Finance - USAA',
            '12345 Finance-USA',
            '12345Finance - USA',
            '12345 Finance USA',
            ' 12345 Finance - USA',
            '12345 Finance - USA\n',
            '12345 Finance - USA ',
        ]
        for department in invalid:
            with self.subTest(department=department):
                with self.assertRaises(FormatError) as ctx:
                    validate_department(department)
                self.assertEqual(ctx.exception.reason, "pattern mismatch")
                self.assertFalse(is_valid_department(department))

    def test_custom_minimum_length(self):
        """The minimum length is configurable."""
        with self.assertRaises(FormatError) as ctx:
            validate_department('12345 Finance - USA', min_length=30)
        self.assertEqual(ctx.exception.reason, "too short")

    def test_non_string(self):
        """Non-string values are rejected as format errors."""
        with self.assertRaises(FormatError):
            validate_department(None)
        with self.assertRaises(FormatError):
            validate_department(12345)


class TestParseDepartment(unittest.TestCase):
    """Test cases for parse_department."""

    def test_parse_accounts_payable(self):
        """The canonical example parses into its three fields."""
        parsed = parse_department('10023 Accounts Payable - USA')
        self.assertEqual(parsed, ParsedDepartment(number='10023', name='Accounts Payable',
                                                  country_code='USA'))

    def test_parse_trims_extra_whitespace(self):
        """Surrounding whitespace around the name is removed."""
        parsed = parse_department('54321   Research  and  Development   -   DEU')
        self.assertEqual(parsed.number, '54321')
        self.assertEqual(parsed.name, 'Research  and  Development')
        self.assertEqual(parsed.country_code, 'DEU')

    def test_parse_name_containing_separator(self):
        """Only the last separator splits off the country code."""
        parsed = parse_department('11111 Sales - Inside - FRA')
        self.assertEqual(parsed.name, 'Sales - Inside')
        self.assertEqual(parsed.country_code, 'FRA')

    def test_parse_single_character_name(self):
        """The shortest valid name is one character."""
        self.assertEqual(parse_department('12345 A - USA').name, 'A')

    def test_parse_invalid_number(self):
        """A non-numeric prefix is rejected."""
        with self.assertRaises(ParseError) as ctx:
            parse_department('12A45 Finance - USA')
        self.assertEqual(ctx.exception.reason, "invalid department number")

    def test_parse_non_ascii_digits_rejected(self):
        """Unicode digits are not department numbers."""
        with self.assertRaises(ParseError):
            parse_department('١٢٣٤٥ Finance - USA')

    def test_parse_invalid_country_code(self):
        """A lowercase suffix is rejected."""
        with self.assertRaises(ParseError) as ctx:
            parse_department('12345 Finance - Usa')
        self.assertEqual(ctx.exception.reason, "invalid country code")

    def test_parse_empty_name(self):
        """A blank name is a typed parse error."""
        for department in ['12345  - USA', '12345   -   USA']:
            with self.subTest(department=department):
                with self.assertRaises(ParseError) as ctx:
                    parse_department(department)
                self.assertEqual(ctx.exception.reason, "empty name")

    def test_parse_no_middle(self):
        """Number immediately followed by code has no name span."""
        with self.assertRaises(ParseError) as ctx:
            parse_department('12345USA')
        self.assertEqual(ctx.exception.reason, "empty name")

    def test_parse_missing_separators(self):
        """Missing separators are reported, not raised as IndexError."""
        with self.assertRaises(ParseError):
            parse_department('12345Finance - USA')
        with self.assertRaises(ParseError):
            parse_department('12345 Finance USA')

    def test_parse_short_and_non_string_input(self):
        """Violated preconditions still produce ParseError."""
        for value in ['', '1234', None, 42]:
            with self.subTest(value=value):
                with self.assertRaises(ParseError):
                    parse_department(value)

    def test_parsed_department_is_immutable(self):
        """ParsedDepartment is frozen."""
        parsed = parse_department('12345 Finance - USA')
        with self.assertRaises(AttributeError):
            parsed.name = 'Other'


if __name__ == '__main__':
    unittest.main()
