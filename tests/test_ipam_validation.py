"""
Unit tests for IPAM validation utilities.
"""

import pytest

from ipam_allocator.managers.ipam_exceptions import InvalidHostname, ValidationError
from ipam_allocator.utils.ipam_validation import IPAMValidation, build_pagination, compute_utilization


class TestIPFormatValidation:
    """Test IP address format validation."""

    def test_valid_ip_addresses(self):
        for ip in ("10.0.0.1", "10.5.23.45", "10.255.255.254", " 10.1.2.3 "):
            is_valid, error = IPAMValidation.validate_ip_format(ip)
            assert is_valid, ip
            assert error is None

    def test_outside_private_space(self):
        is_valid, error = IPAMValidation.validate_ip_format("192.168.1.1")
        assert not is_valid
        assert "10.0.0.0/8" in error

    def test_malformed(self):
        for ip in ("10.0.0", "10.0.0.256", "not-an-ip", ""):
            is_valid, error = IPAMValidation.validate_ip_format(ip)
            assert not is_valid
            assert error == "Invalid IP address format"

    def test_parse_ip(self):
        assert IPAMValidation.parse_ip("10.5.23.45") == (5, 23, 45)
        with pytest.raises(ValidationError):
            IPAMValidation.parse_ip("172.16.0.1")


class TestOctetValidation:
    def test_z_excludes_network_and_broadcast(self):
        assert IPAMValidation.validate_octet_range(1, "z") == (True, None)
        assert IPAMValidation.validate_octet_range(254, "Z") == (True, None)
        assert not IPAMValidation.validate_octet_range(0, "Z")[0]
        assert not IPAMValidation.validate_octet_range(255, "Z")[0]

    def test_x_and_y_bounds(self):
        assert IPAMValidation.validate_octet_range(0, "X")[0]
        assert IPAMValidation.validate_octet_range(255, "Y")[0]
        assert not IPAMValidation.validate_octet_range(256, "X")[0]
        assert not IPAMValidation.validate_octet_range(True, "X")[0]
        assert not IPAMValidation.validate_octet_range(5, "W")[0]


class TestHostnameValidation:
    def test_valid(self):
        for hostname in ("web-01", "db_primary", "app.internal", "ab", "x" * 100):
            assert IPAMValidation.require_hostname(hostname) == hostname

    def test_invalid(self):
        for hostname in ("a", "x" * 101, "has space", "bad!", None, 42):
            with pytest.raises(InvalidHostname) as exc_info:
                IPAMValidation.require_hostname(hostname)
            assert exc_info.value.error_code == "INVALID_HOSTNAME"

    def test_invalid_hostname_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            IPAMValidation.require_hostname("!")

    def test_prefix(self):
        assert IPAMValidation.require_hostname_prefix("web") == "web"
        for prefix in ("w", "web.", "web 1", None):
            with pytest.raises(ValidationError):
                IPAMValidation.require_hostname_prefix(prefix)

    def test_trailing_newline_rejected(self):
        with pytest.raises(InvalidHostname):
            IPAMValidation.require_hostname("web-01\n")
        with pytest.raises(ValidationError) as exc_info:
            IPAMValidation.require_hostname_prefix("web\n")
        assert exc_info.value.error_code == "VALIDATION_ERROR"


class TestTagValidation:
    def test_valid_tags(self):
        is_valid, errors = IPAMValidation.validate_tag_format({"env": "prod", "team-name": "Net Ops 2.0"})
        assert is_valid
        assert errors == []

    def test_invalid_tags(self):
        is_valid, errors = IPAMValidation.validate_tag_format({"bad key": "x", "ok": "semi;colon"})
        assert not is_valid
        assert len(errors) == 2

    def test_tag_key_with_trailing_newline(self):
        is_valid, errors = IPAMValidation.validate_tag_format({"env\n": "prod"})
        assert not is_valid
        assert errors == ["Tag key 'env\n' contains invalid characters"]

    def test_too_many_tags(self):
        tags = {f"k{i}": "v" for i in range(51)}
        assert not IPAMValidation.validate_tag_format(tags)[0]

    def test_tags_must_be_mapping(self):
        assert IPAMValidation.validate_tag_format(["env"]) == (False, ["Tags must be a dictionary"])
        assert IPAMValidation.require_tags(None) == {}


class TestRequiredFields:
    def test_reason(self):
        assert IPAMValidation.require_reason("  moved  ") == "moved"
        for reason in ("", "  ", None):
            with pytest.raises(ValidationError):
                IPAMValidation.require_reason(reason)

    def test_region_name(self):
        assert IPAMValidation.require_region_name(" dc1 ") == "dc1"
        with pytest.raises(ValidationError):
            IPAMValidation.require_region_name("x" * 101)

    def test_page(self):
        IPAMValidation.require_page(1, 100)
        with pytest.raises(ValidationError):
            IPAMValidation.require_page(0, 10)
        with pytest.raises(ValidationError):
            IPAMValidation.require_page(1, 0)
        with pytest.raises(ValidationError):
            IPAMValidation.require_page(1, 51, max_page_size=50)


class TestHelpers:
    def test_compute_utilization(self):
        assert compute_utilization(0, 254) == 0.0
        assert compute_utilization(127, 254) == 50.0
        assert compute_utilization(300, 254) == 100.0
        assert compute_utilization(5, 0) == 0.0

    def test_build_pagination(self):
        assert build_pagination(2, 10, 25) == {
            "page": 2,
            "page_size": 10,
            "total_count": 25,
            "total_pages": 3,
            "has_next": True,
            "has_prev": True,
        }
        assert build_pagination(1, 10, 0)["total_pages"] == 0
