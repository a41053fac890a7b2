"""Tests for the named validator registry and built-in validators."""
import pytest

from slots.validators import (
    PHONE_REASON, TEXT_REASON, ValidatorRegistry, ValidatorResult,
    digits_only, spoken_to_digits, validate_email, validate_name,
    validate_phone, validate_pincode,
)


class TestSpokenDigits:
    def test_words_become_digits(self):
        assert spoken_to_digits("nine eight seven") == "9 8 7"

    def test_double_and_triple(self):
        assert digits_only("nine double eight triple seven") == "988777"

    def test_whole_tokens_only(self):
        assert spoken_to_digits("someone") == "someone"

    def test_hindi_digits(self):
        assert digits_only("नौ आठ सात") == "987"


class TestPhone:
    @pytest.mark.parametrize("raw", [
        "9876543210",
        "98765 43210",
        "+91 98765 43210",
        "09876543210",
        "nine eight seven six five four three two one zero",
    ])
    def test_valid_numbers_normalize(self, raw):
        result = validate_phone(raw)
        assert result.ok
        assert result.value == "9876543210"

    @pytest.mark.parametrize("raw", ["12345", "5876543210", "not a number", "98765432101"])
    def test_invalid_numbers(self, raw):
        result = validate_phone(raw)
        assert not result
        assert result.reason == PHONE_REASON


class TestPincode:
    def test_valid(self):
        assert validate_pincode("560 001").value == "560001"

    def test_leading_zero_rejected(self):
        assert not validate_pincode("056001")

    def test_wrong_length(self):
        assert not validate_pincode("56001")


class TestEmail:
    def test_plain(self):
        assert validate_email("Email: Asha@Example.com").value == "asha@example.com"

    def test_spoken(self):
        assert validate_email("asha at example dot com").value == "asha@example.com"

    def test_invalid(self):
        assert not validate_email("asha example")


class TestName:
    @pytest.mark.parametrize("raw,expected", [
        ("Asha", "Asha"),
        ("my name is asha", "Asha"),
        ("hi, my name is Asha Rao", "Asha Rao"),
        ("Ravi here", "Ravi"),
        ("मेरा नाम राहुल है", "राहुल"),
    ])
    def test_accepts_names(self, raw, expected):
        assert validate_name(raw).value == expected

    @pytest.mark.parametrize("raw", ["a", "12345", "my name is", "one two three four five"])
    def test_rejects_non_names(self, raw):
        assert not validate_name(raw)


class TestValidatorRegistry:
    def test_defaults_registered(self):
        registry = ValidatorRegistry()
        for name in ("phone", "pincode", "email", "name", "address", "model", "text"):
            assert name in registry

    def test_empty_registry(self):
        registry = ValidatorRegistry(include_defaults=False)
        assert registry.names() == []

    def test_register_custom(self):
        registry = ValidatorRegistry()
        registry.register("vehicle_reg", lambda raw: ValidatorResult.accept(raw.upper()))
        assert registry.validate("vehicle_reg", "ka01ab1234").value == "KA01AB1234"

    def test_duplicate_rejected_unless_replace(self):
        registry = ValidatorRegistry()
        with pytest.raises(ValueError, match="already registered"):
            registry.register("phone", validate_phone)
        registry.register("phone", validate_pincode, replace=True)
        assert registry.validate("phone", "560001").ok

    def test_unknown_validator(self):
        with pytest.raises(KeyError, match="Unknown validator"):
            ValidatorRegistry().get("passport")

    def test_blank_input_rejected(self):
        result = ValidatorRegistry().validate("phone", "   ")
        assert not result
        assert result.reason == TEXT_REASON

    def test_result_repr(self):
        assert "ok" in repr(ValidatorResult.accept("x"))
        assert "rejected" in repr(ValidatorResult.reject("bad"))
