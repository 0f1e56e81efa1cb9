import dns.edns
import dns.flags
import dns.message
import dns.rcode

from sdns.dnsutil import generate_server_cookie
from sdns.middleware.chain import Chain, Handler, MemoryWriter
from sdns.middleware.ratelimit import RateLimit, TokenBucket

CLIENT_COOKIE = "0123456789abcdef"


class Recorder(Handler):
    name = "recorder"

    def __init__(self):
        self.calls = 0

    def serve_dns(self, ctx, chain):
        self.calls += 1


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def set_cookie(req, hexed):
    req.use_edns(
        0,
        dns.flags.DO,
        4096,
        options=[dns.edns.GenericOption(dns.edns.OptionType.COOKIE, bytes.fromhex(hexed))],
    )


def cookie_request():
    req = dns.message.make_query("example.com.", "A")
    set_cookie(req, CLIENT_COOKIE)
    return req


def test_token_bucket_refills():
    clock = FakeClock()
    bucket = TokenBucket(60.0, 1, clock)
    assert bucket.allow() is True
    assert bucket.allow() is False
    clock.now = 30.0
    assert bucket.allow() is False
    clock.now = 90.0
    assert bucket.allow() is True


def test_token_bucket_burst():
    clock = FakeClock()
    bucket = TokenBucket(1.0, 3, clock)
    assert [bucket.allow() for _ in range(4)] == [True, True, True, False]


def test_token_bucket_without_interval_never_refills():
    clock = FakeClock()
    bucket = TokenBucket(None, 1, clock)
    assert bucket.allow() is True
    clock.now = 1e9
    assert bucket.allow() is False


def test_name():
    assert RateLimit("secret", 1).name == "ratelimit"


def test_cookie_flow():
    r = RateLimit("secret", 1)
    chain = Chain([])
    req = cookie_request()

    writer = MemoryWriter("udp", "")
    chain.reset(writer, req)
    r.serve_dns(None, chain)
    assert not writer.written

    writer = MemoryWriter("udp", "10.0.0.1:0")
    chain.reset(writer, req)
    r.serve_dns(None, chain)
    r.serve_dns(None, chain)
    assert writer.written
    assert writer.rcode == dns.rcode.BADCOOKIE
    expected = generate_server_cookie("secret", "10.0.0.1", CLIENT_COOKIE)
    assert bytes(writer.msg.options[0].to_wire()).hex() == expected

    set_cookie(req, CLIENT_COOKIE)
    writer = MemoryWriter("udp", "10.0.0.1:0")
    chain.reset(writer, req)
    r.serve_dns(None, chain)
    assert not writer.written

    writer = MemoryWriter("tcp", "10.0.0.2:0")
    chain.reset(writer, req)
    r.serve_dns(None, chain)
    r.serve_dns(None, chain)
    assert not writer.written

    req.use_edns(0, dns.flags.DO, 4096, options=[])
    writer = MemoryWriter("udp", "10.0.0.1:0")
    chain.reset(writer, req)
    r.serve_dns(None, chain)
    r.serve_dns(None, chain)
    assert not writer.written


def test_valid_server_cookie_is_not_limited():
    r = RateLimit("secret", 1)
    recorder = Recorder()
    chain = Chain([recorder])
    req = cookie_request()

    chain.reset(MemoryWriter("udp", "10.0.0.3:0"), req)
    r.serve_dns(None, chain)
    server = generate_server_cookie("secret", "10.0.0.3", CLIENT_COOKIE)
    for _ in range(3):
        set_cookie(req, server)
        chain.reset(MemoryWriter("udp", "10.0.0.3:0"), req)
        r.serve_dns(None, chain)
    assert recorder.calls == 4


def test_limit_without_cookie():
    r = RateLimit("secret", 1)
    recorder = Recorder()
    chain = Chain([recorder])
    req = dns.message.make_query("example.com.", "A")
    for _ in range(3):
        chain.reset(MemoryWriter("udp", "10.0.0.4:0"), req)
        r.serve_dns(None, chain)
    assert recorder.calls == 1


def test_loopback_and_disabled_pass_through():
    r = RateLimit("secret", 1)
    recorder = Recorder()
    chain = Chain([recorder])
    req = dns.message.make_query("example.com.", "A")
    for _ in range(3):
        chain.reset(MemoryWriter("udp", "127.0.0.1:0"), req)
        r.serve_dns(None, chain)
    assert recorder.calls == 3

    r.rate = 0
    for _ in range(3):
        chain.reset(MemoryWriter("udp", "10.0.0.5:0"), req)
        r.serve_dns(None, chain)
    assert recorder.calls == 6


def test_internal_writer_passes_through():
    r = RateLimit("secret", 1)
    recorder = Recorder()
    chain = Chain([recorder])
    req = dns.message.make_query("example.com.", "A")
    for _ in range(3):
        chain.reset(MemoryWriter("udp", "127.0.0.255:0"), req)
        r.serve_dns(None, chain)
    assert recorder.calls == 3