#!/usr/bin/env python3
"""
Tests for ZIP code validation.

Run: pytest tests/test_postal_code.py -v
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from resolution.errors import InputError
from resolution.postal_code import validate_postal_code


class TestValidFormat:

    @pytest.mark.parametrize("zip_code", ["75201", "77002", "79999", "75000"])
    def test_accepts_in_region(self, zip_code):
        assert validate_postal_code(zip_code) == zip_code

    def test_strips_whitespace(self):
        assert validate_postal_code("  75201\n") == "75201"


class TestRejections:

    @pytest.mark.parametrize("raw", ["1234", "123456", "7520A", "75201-1234", "", "   ", "75 201"])
    def test_invalid_format(self, raw):
        with pytest.raises(InputError) as exc:
            validate_postal_code(raw)
        assert exc.value.code == InputError.INVALID_ZIP_FORMAT

    @pytest.mark.parametrize("raw", [None, 75201, 75201.0, ["75201"]])
    def test_non_string_is_invalid_format(self, raw):
        with pytest.raises(InputError) as exc:
            validate_postal_code(raw)
        assert exc.value.code == InputError.INVALID_ZIP_FORMAT

    @pytest.mark.parametrize("zip_code", ["10001", "74999", "80000", "00000"])
    def test_out_of_region(self, zip_code):
        with pytest.raises(InputError) as exc:
            validate_postal_code(zip_code)
        assert exc.value.code == InputError.NOT_IN_REGION

    def test_custom_region_bounds(self):
        assert validate_postal_code("10001", region_min=10000, region_max=14999) == "10001"
        with pytest.raises(InputError):
            validate_postal_code("75201", region_min=10000, region_max=14999)
