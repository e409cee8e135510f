import pytest

from ens_assessment.assessment_errors import InvalidFieldValue
from ens_assessment.field_validators import (
    check_date,
    check_duration,
    check_frequency,
    check_integer,
    check_list,
    check_percentage,
    check_yes_no,
    is_known_format_hint,
    read_confirmation,
    require_valid_field_value,
    validate_field_value,
)
from ens_assessment.models import RequiredField


class TestFormatChecks:
    @pytest.mark.parametrize("raw,expected", [
        ("yes", "yes"), ("Sí", "yes"), ("si, en otro CPD", "yes"), ("true", "yes"),
        ("no", "no"), ("No.", "no"), ("negativo", "no"),
    ])
    def test_yes_no(self, raw, expected):
        assert check_yes_no(raw) == expected

    @pytest.mark.parametrize("raw", [
        "sometimes", "no sé", "No sé, lo llevaba otro equipo", "no estoy seguro", "no lo sé",
        "not sure", "I'm not sure", "don't know",
    ])
    def test_yes_no_rejects_other_text(self, raw):
        assert check_yes_no(raw) is None

    def test_yes_no_keeps_real_negatives(self):
        assert check_yes_no("no se hacen copias fuera") == "no"
        assert check_yes_no("No, only on site") == "no"

    @pytest.mark.parametrize("raw,expected", [
        ("yes, that is correct", True), ("Sí", True), ("Correcto.", True), ("ok, save it", True),
        ("no, that is not correct", False), ("That's wrong", False), ("No es correcto", False),
        ("yes... no wait, incorrect", False),
        ("hmm, let me check", None), ("no sé", None), ("", None),
    ])
    def test_read_confirmation(self, raw, expected):
        assert read_confirmation(raw) is expected

    def test_frequency_normalizes_case_inside_phrases(self):
        assert check_frequency("Daily") == "daily"
        assert check_frequency("We run it WEEKLY") == "we run it weekly"
        assert check_frequency("Every 2 Weeks") == "every 2 weeks"

    @pytest.mark.parametrize("raw", ["daily", "Diaria", "every 2 weeks", "cada 6 horas", "we run it weekly"])
    def test_frequency_accepts_en_and_es(self, raw):
        assert check_frequency(raw) is not None

    def test_frequency_rejects_vague_text(self):
        assert check_frequency("from time to time") is None

    def test_integer_and_percentage(self):
        assert check_integer(" 12 ") == "12"
        assert check_integer("twelve") is None
        assert check_percentage("85%") == "85%"
        assert check_percentage("120") is None

    def test_duration_and_date(self):
        assert check_duration("4 hours") == "4 hours"
        assert check_duration("90 días") == "90 días"
        assert check_duration("soon") is None
        assert check_date("2024-03-01") == "2024-03-01"
        assert check_date("01/03/2024") is None

    def test_list_normalizes_separators(self):
        assert check_list("VPN; admin accounts ,  email") == "VPN, admin accounts, email"
        assert check_list(["a", "", "b"]) == "a, b"
        assert check_list(" , ") is None


class TestValidateFieldValue:
    def test_regex_hint(self):
        rf = RequiredField("code", "control code", r"regex:[a-z]{2}\.[a-z]{3,4}\.\d+")
        assert validate_field_value(rf, "mp.info.6") == "mp.info.6"
        assert validate_field_value(rf, "backups") is None

    def test_none_is_never_valid(self):
        assert validate_field_value(RequiredField("a", "a"), None) is None

    def test_require_raises_invalid_field_value(self):
        rf = RequiredField("offsite", "off-site copy", "yes_no")
        with pytest.raises(InvalidFieldValue) as exc_info:
            require_valid_field_value(rf, "maybe")
        assert exc_info.value.http_status == 422
        assert exc_info.value.to_dict()["field"] == "offsite"

    def test_known_hints(self):
        assert is_known_format_hint("frequency")
        assert is_known_format_hint("regex:^a+$")
        assert not is_known_format_hint("regex:[")
        assert not is_known_format_hint("")
