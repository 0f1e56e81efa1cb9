import base64
from datetime import timedelta

import dns.edns
import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from sdns.dnsutil import (
    DEFAULT_MSG_SIZE,
    MAXIMUM_DEFAULT_TTL,
    MINIMAL_DEFAULT_TTL,
    MIN_MSG_SIZE,
    EdnsInfo,
    ResponseType,
    clear_dnssec,
    clear_opt,
    extract_address_from_reverse,
    generate_server_cookie,
    is_reverse,
    minimal_ttl,
    not_supported,
    parse_purge_question,
    set_edns0,
    set_rcode,
)

SIG = "AQIDBAUGBwgJCgsMDQ4PEA=="


def rrset(name, ttl, rdtype, text):
    return dns.rrset.from_text(name, ttl, "IN", rdtype, text)


@pytest.mark.parametrize(
    "reverse_name, expected",
    [
        ("54.119.58.176.in-addr.arpa.", "176.58.119.54"),
        (".58.176.in-addr.arpa.", ""),
        (
            "b.a.9.8.7.6.5.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.8.b.d.0.1.0.0.2.in-addr.arpa.",
            "",
        ),
        (
            "b.a.9.8.7.6.5.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.8.b.d.0.1.0.0.2.ip6.arpa.",
            "2001:db8::567:89ab",
        ),
        ("d.0.1.0.0.2.ip6.arpa.", ""),
        ("54.119.58.176.ip6.arpa.", ""),
        ("NONAME", ""),
        ("", ""),
    ],
)
def test_extract_address_from_reverse(reverse_name, expected):
    assert extract_address_from_reverse(reverse_name) == expected


@pytest.mark.parametrize(
    "name, expected",
    [
        ("b.a.9.8.7.6.5.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.8.b.d.0.1.0.0.2.ip6.arpa.", 2),
        ("d.0.1.0.0.2.in-addr.arpa.", 1),
        ("example.com.", 0),
        ("", 0),
        ("in-addr.arpa.example.com.", 0),
    ],
)
def test_is_reverse(name, expected):
    assert is_reverse(name) == expected


def test_set_rcode_with_edns():
    req = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096, want_dnssec=True)
    msg = set_rcode(req, dns.rcode.SERVFAIL, True)
    assert msg.rcode() == dns.rcode.SERVFAIL
    assert msg.id == req.id
    assert msg.question == req.question
    assert msg.flags & dns.flags.RA
    assert msg.flags & dns.flags.RD
    assert msg.flags & dns.flags.QR
    assert msg.ednsflags & dns.flags.DO


def test_set_rcode_clears_do():
    req = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096, want_dnssec=True)
    msg = set_rcode(req, dns.rcode.REFUSED, False)
    assert msg.rcode() == dns.rcode.REFUSED
    assert not msg.ednsflags & dns.flags.DO


def test_set_rcode_without_edns_adds_none():
    req = dns.message.make_query("example.com.", "A")
    msg = set_rcode(req, dns.rcode.SERVFAIL, True)
    assert msg.edns == -1
    assert msg.rcode() == dns.rcode.SERVFAIL


def test_set_edns0_sequence():
    req = dns.message.make_query("example.com.", "A")

    info = set_edns0(req)
    assert info == EdnsInfo(version=0, size=DEFAULT_MSG_SIZE, cookie="", nsid=False, do=False)
    assert req.edns == 0
    assert req.payload == DEFAULT_MSG_SIZE
    assert req.ednsflags & dns.flags.DO

    info = set_edns0(req)
    assert req.edns == 0
    assert info.do is True

    req.use_edns(0, 0, 128)
    info = set_edns0(req)
    assert info.size == MIN_MSG_SIZE
    assert req.payload == DEFAULT_MSG_SIZE

    req.use_edns(100, 0, 4096)
    info = set_edns0(req)
    assert info.version == 100
    assert req.edns == 100
    assert info.do is False

    req.additional = [rrset("example.com.", 300, "A", "127.0.0.1")]
    req = clear_opt(req)
    assert len(req.additional) == 1
    assert req.edns == -1


def test_set_edns0_size_is_capped():
    req = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096)
    info = set_edns0(req)
    assert info.size == DEFAULT_MSG_SIZE


def test_set_edns0_reads_cookie_and_nsid():
    cookie = dns.edns.GenericOption(10, b"testtesttesttest")
    nsid = dns.edns.GenericOption(3, b"")
    req = dns.message.make_query(
        "example.com.", "A", use_edns=0, payload=4096, options=[cookie, nsid]
    )
    info = set_edns0(req)
    assert info.cookie == "7465737474657374"
    assert info.nsid is True
    assert len(req.options) == 0


def test_set_edns0_short_cookie_ignored():
    cookie = dns.edns.GenericOption(10, b"abc")
    req = dns.message.make_query("example.com.", "A", use_edns=0, payload=4096, options=[cookie])
    assert set_edns0(req).cookie == ""


def test_generate_server_cookie():
    secret = "secret"
    first = generate_server_cookie(secret, "127.0.0.1", "7465737474657374")
    assert first.startswith("7465737474657374")
    assert len(first) == 16 + 64
    assert first == generate_server_cookie(secret, "127.0.0.1", "7465737474657374")
    assert first != generate_server_cookie("token", "127.0.0.1", "7465737474657374")
    assert first != generate_server_cookie(secret, "10.0.0.1", "7465737474657374")


def test_clear_dnssec():
    msg = dns.message.make_query("miek.nl.", "NS")
    msg.answer = [
        rrset("miek.nl.", 1800, "NS", "linode.atoom.net."),
        rrset(
            "miek.nl.",
            1800,
            "RRSIG",
            f"NS 8 2 1800 20181217031301 20181117031301 12051 miek.nl. {SIG}",
        ),
    ]
    msg.authority = [
        rrset("linode.atoom.net.", 1800, "A", "176.58.119.54"),
        rrset(
            "linode.atoom.net.",
            1800,
            "RRSIG",
            f"A 8 3 1800 20181217031301 20181117031301 53289 atoom.net. {SIG}",
        ),
        rrset("atoom.net.", 1800, "NSEC", "b.atoom.net. A NS"),
    ]
    msg = clear_dnssec(msg)
    assert len(msg.answer) == 1
    assert msg.answer[0].rdtype == dns.rdatatype.NS
    assert len(msg.authority) == 1
    assert msg.authority[0].rdtype == dns.rdatatype.A


def test_clear_dnssec_keeps_rrsig_question():
    msg = dns.message.make_query("miek.nl.", "RRSIG")
    msg.answer = [
        rrset(
            "miek.nl.",
            1800,
            "RRSIG",
            f"NS 8 2 1800 20181217031301 20181117031301 12051 miek.nl. {SIG}",
        )
    ]
    assert len(clear_dnssec(msg).answer) == 1


def _purge_query(text):
    encoded = base64.b64encode(text.encode()).decode()
    return dns.message.make_query(encoded + ".", dns.rdatatype.NULL)


def test_parse_purge_question():
    assert parse_purge_question(dns.message.Message()) is None
    assert parse_purge_question(dns.message.make_query("test.com.", dns.rdatatype.NULL)) is None
    assert parse_purge_question(_purge_query("test.com.")) is None
    assert parse_purge_question(_purge_query("ff:test.com.")) is None
    assert parse_purge_question(_purge_query("A:test.com.")) == ("test.com.", dns.rdatatype.A)


def test_parse_purge_question_requires_exact_type_name():
    assert parse_purge_question(_purge_query("a:test.com.")) is None
    assert parse_purge_question(_purge_query("AAAA:test.com.")) == (
        "test.com.",
        dns.rdatatype.AAAA,
    )


def test_not_supported():
    req = dns.message.make_query("example.com.", "A")
    req.set_opcode(dns.opcode.UPDATE)
    msg = not_supported(req)
    assert msg.rcode() == dns.rcode.NOTIMP
    assert msg.id == req.id
    assert msg.opcode() == dns.opcode.UPDATE
    assert msg.flags & dns.flags.QR
    assert msg.flags & dns.flags.RD
    assert msg.flags & dns.flags.AD
    assert msg.question == []


def test_minimal_ttl_cases():
    assert minimal_ttl(None, ResponseType.OTHER_ERROR) == MINIMAL_DEFAULT_TTL

    msg = dns.message.make_query("z.example.com.", "A", use_edns=0, payload=4096, want_dnssec=True)
    assert minimal_ttl(msg, ResponseType.NO_ERROR) == MINIMAL_DEFAULT_TTL

    msg.authority = [
        rrset(
            "example.com.",
            1800,
            "SOA",
            "ns.example.com. hostmaster.example.com. 2025042470 10000 2400 604800 3600",
        )
    ]
    assert minimal_ttl(msg, ResponseType.NO_DATA) == timedelta(seconds=1800)

    msg.additional = [rrset("example.com.", 1200, "A", "127.0.0.1")]
    assert minimal_ttl(msg, ResponseType.NAME_ERROR) == timedelta(seconds=1200)

    msg.answer = [rrset("z.example.com.", 600, "A", "127.0.0.1")]
    assert minimal_ttl(msg, ResponseType.NAME_ERROR) == timedelta(seconds=600)


def test_minimal_ttl_other_types_use_default():
    msg = dns.message.make_query("example.org.", "A")
    msg.answer = [rrset("example.org.", 600, "A", "127.0.0.1")]
    assert minimal_ttl(msg, ResponseType.SERVER_ERROR) == MINIMAL_DEFAULT_TTL
    assert minimal_ttl(msg, ResponseType.DELEGATION) == MINIMAL_DEFAULT_TTL


def test_minimal_ttl_many_records():
    msg = dns.message.make_query("example.org.", "A")
    msg.authority = [
        rrset(f"{label}.example.org.", ttl, "A", "127.0.0.53")
        for label, ttl in zip("abcde", (1800, 1900, 1600, 1100, 1000))
    ]
    msg.additional = [
        rrset(f"{label}.example.org.", ttl, "A", "127.0.0.53")
        for label, ttl in zip("abcde", (1800, 1600, 1400, 1200, 1100))
    ]
    assert minimal_ttl(msg, ResponseType.NO_ERROR) == timedelta(seconds=1000)


def test_minimal_ttl_capped_at_maximum():
    msg = dns.message.make_query("example.org.", "A")
    msg.answer = [rrset("example.org.", 200000, "A", "127.0.0.1")]
    assert minimal_ttl(msg, ResponseType.NO_ERROR) == MAXIMUM_DEFAULT_TTL