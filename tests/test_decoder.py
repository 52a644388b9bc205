import pytest

from elmtrend.link.decoder import (
    PIDS,
    clean_response,
    decode_dtc,
    decode_parameter,
    decode_readiness,
    decode_test_records,
    decode_vin,
    evaluate_test_status,
    parse_dtc_response,
    response_echo,
)
from elmtrend.link.errors import MalformedResponse, UnsupportedParameter


@pytest.mark.parametrize(
    "name,data,expected",
    [
        ("RPM", [0x1A, 0xF8], 1726.0),
        ("COOLANT", [0x7D], 85.0),
        ("BATTERY", [0x37, 0x42], 14.146),
        ("TIMING_ADVANCE", [0x80], 0.0),
        ("SHORT_FUEL_TRIM_1", [0x80], 0.0),
        ("O2_B1S1", [0xC8], 1.0),
        ("THROTTLE", [0xFF], 100.0),
    ],
)
def test_scaling_worked_examples(name, data, expected):
    assert PIDS[name].decode(data) == pytest.approx(expected)


def test_response_echo():
    assert response_echo("010C") == "410C"
    assert response_echo("0902") == "4902"
    assert response_echo("03") == "43"


def test_decode_with_spaces_and_header():
    desc = PIDS["RPM"]
    assert decode_parameter(desc, "41 0C 1A F8") == pytest.approx(1726.0)
    assert decode_parameter(desc, "410C1AF8") == pytest.approx(1726.0)
    assert decode_parameter(desc, "7E8 04 41 0C 1A F8") == pytest.approx(1726.0)


def test_status_lines_ignored():
    assert decode_parameter(PIDS["COOLANT"], "SEARCHING...\n41 05 7D") == pytest.approx(85.0)


def test_unsupported_and_malformed():
    with pytest.raises(UnsupportedParameter):
        decode_parameter(PIDS["FUEL_LEVEL"], "NO DATA")
    with pytest.raises(UnsupportedParameter):
        decode_parameter(PIDS["FUEL_LEVEL"], "?")
    with pytest.raises(MalformedResponse):
        decode_parameter(PIDS["RPM"], "41 0C 1A")
    with pytest.raises(MalformedResponse):
        decode_parameter(PIDS["RPM"], "CAN ERROR")
    with pytest.raises(MalformedResponse):
        decode_parameter(PIDS["RPM"], "41 0D 3C")


def test_clean_response_without_echo_strips_header():
    assert clean_response("7E8 41 0D") == [0x41, 0x0D]
    assert clean_response("7E8 41 0D 3") is None
    assert clean_response("") is None


def test_dtc_decode():
    assert decode_dtc("0300") == "P0300"
    assert decode_dtc("4102") == "C0102"
    assert decode_dtc(0x81, 0x23) == "B0123"
    assert decode_dtc(0xC1, 0x00) == "U0100"
    assert decode_dtc("0000") is None


def test_dtc_response_skips_count_and_padding():
    codes = parse_dtc_response("43 02 03 00 01 71 00 00")
    assert codes == ["P0300", "P0171"]
    assert parse_dtc_response("43 00") == []
    assert parse_dtc_response("NO DATA") == []


def test_readiness_bits():
    status = decode_readiness(0x83, 0x07, 0x65)
    assert status.mil_on is True
    assert status.stored_code_count == 3
    assert status.monitors["catalyst"].supported
    assert status.as_dict()["milOn"] is True
    assert status.as_dict()["dtcCount"] == 3

    clear = decode_readiness(0x00, 0x00, 0x00)
    assert clear.mil_on is False
    assert clear.stored_code_count == 0
    assert clear.monitors["misfire"].complete


def test_mode06_records():
    # catalyst bank 1: min 0, max 500, current 200 -> 40 %
    data = [0x01, 0x00, 0x00, 0x00, 0x01, 0xF4, 0x00, 0xC8]
    # unknown test with a negative minimum and a current value past the limit
    data += [0x42, 0x01, 0xFF, 0x9C, 0x00, 0x64, 0x00, 0xC8]
    data += [0x05, 0x01]  # partial trailing record
    records = decode_test_records(data)
    assert len(records) == 2

    cat = records[0]
    assert cat.name == "Catalyst Monitor Bank 1"
    assert cat.current == pytest.approx(0.2)
    assert cat.max == pytest.approx(0.5)
    assert cat.percent_to_limit == pytest.approx(40.0)
    assert cat.status_label == "Excellent"
    assert cat.category == "Catalyst System"

    other = records[1]
    assert other.name == "Test 42 Component 01"
    assert other.min == pytest.approx(-0.1)
    # not clamped to 100
    assert other.percent_to_limit == pytest.approx(150.0)
    assert other.status_level == "warning"
    assert set(other.as_dict()) == {
        "test", "testID", "componentID", "min", "max", "current", "unit", "status", "percentToLimit",
    }


def test_mode06_zero_span():
    records = decode_test_records([0x01, 0x00, 0x00, 0x10, 0x00, 0x10, 0x00, 0x10])
    assert records[0].percent_to_limit == 0.0


def test_status_grading_boundaries():
    assert evaluate_test_status(49.9) == "excellent"
    assert evaluate_test_status(50) == "good"
    assert evaluate_test_status(75) == "fair"
    assert evaluate_test_status(90) == "warning"


def test_vin_extraction():
    raw = "49 02 01 31 47 31 4A 43 35 34 34 34 52 37 32 35 32 33 36 37"
    data = clean_response(raw, "4902")
    assert decode_vin(data) == "1G1JC5444R7252367"
    assert decode_vin([0x31, 0x32]) is None
