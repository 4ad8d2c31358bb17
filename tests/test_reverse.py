"""Unit tests for reverse-lookup domain calculation."""

import math

import pytest

from zeroplex.reverse import reverse_domain, reverse_domains


class TestIPv4:
    """Tests for in-addr.arpa domains."""

    @pytest.mark.parametrize(
        "cidr,expected",
        [
            ("10.1.2.0/24", "~2.1.10.in-addr.arpa"),
            ("10.1.2.3/24", "~2.1.10.in-addr.arpa"),
            ("10.1.2.3/20", "~2.1.10.in-addr.arpa"),
            ("10.0.0.0/8", "~10.in-addr.arpa"),
            ("172.16.5.9/12", "~16.172.in-addr.arpa"),
            ("192.168.7.42/32", "~42.7.168.192.in-addr.arpa"),
        ],
    )
    def test_reverse_domain(self, cidr: str, expected: str) -> None:
        assert reverse_domain(cidr) == expected

    def test_every_prefix_length_stays_in_bounds(self) -> None:
        """Each prefix length yields ceil(p/8) labels and the arpa suffix."""
        for prefix in range(0, 33):
            domain = reverse_domain(f"10.20.30.40/{prefix}")
            assert domain.startswith("~")
            assert domain.endswith("in-addr.arpa")
            labels = domain[1:].split(".")[:-2]
            assert len(labels) == math.ceil(prefix / 8)


class TestIPv6:
    """Tests for ip6.arpa domains."""

    def test_nibbles_reversed_low_before_high(self) -> None:
        assert reverse_domain("fd00:1234::1/32") == "~4.3.2.1.0.0.d.f.ip6.arpa"

    def test_partial_nibble_prefix_rounds_up(self) -> None:
        assert reverse_domain("fd00::1/7") == "~d.f.ip6.arpa"

    def test_full_length_prefix(self) -> None:
        domain = reverse_domain("fd00::1/128")
        labels = domain[1:].split(".")[:-2]
        assert len(labels) == 32
        assert labels[0] == "1"
        assert labels[-2:] == ["d", "f"]

    def test_every_prefix_length_stays_in_bounds(self) -> None:
        for prefix in range(0, 129):
            domain = reverse_domain(f"fd12:3456:789a:1::2/{prefix}")
            assert domain.startswith("~")
            assert domain.endswith("ip6.arpa")
            labels = domain[1:].split(".")[:-2]
            assert len(labels) == math.ceil(prefix / 4)


class TestReverseDomains:
    """Tests for the list form used when building desired state."""

    def test_one_domain_per_cidr_in_order(self) -> None:
        assert reverse_domains(["10.1.2.3/24", "fd00::1/8"]) == [
            "~2.1.10.in-addr.arpa",
            "~d.f.ip6.arpa",
        ]

    def test_malformed_entries_are_skipped(self) -> None:
        assert reverse_domains(["bogus", "10.0.0.1/33", "10.1.2.3/24"]) == [
            "~2.1.10.in-addr.arpa"
        ]

    def test_none_and_empty(self) -> None:
        assert reverse_domains(None) == []
        assert reverse_domains([]) == []
