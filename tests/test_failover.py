import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype

from sdns.middleware.chain import Chain, Handler, MemoryWriter
from sdns.middleware.failover import Failover


class ServFail(Handler):
    name = "dummy"

    def serve_dns(self, ctx, chain):
        m = dns.message.make_response(chain.request)
        m.set_rcode(dns.rcode.SERVFAIL)
        chain.writer.write_msg(m)


class FakeExchange:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def __call__(self, req, server):
        self.calls.append((req, server))
        if server in self.failing:
            raise OSError("unreachable")
        resp = dns.message.make_response(req)
        resp.id = (req.id + 1) % 65536
        resp.set_rcode(dns.rcode.NOERROR)
        return resp


def make_request(rd):
    req = dns.message.make_query("example.com.", dns.rdatatype.A)
    if rd:
        req.flags |= dns.flags.RD
    else:
        req.flags &= ~dns.flags.RD
    return req


def run(f, req):
    ch = Chain([f, ServFail()])
    mw = MemoryWriter("udp", "127.0.0.1:0")
    ch.reset(mw, req)
    ch.next(None)
    return ch, mw


def test_invalid_servers_are_dropped():
    f = Failover(["[::255]:53", "1.1.1.1:53", "1"], exchange=FakeExchange())
    assert f.name == "failover"
    assert f.servers == ["[::255]:53", "1.1.1.1:53"]


def test_without_recursion_desired_servfail_passes():
    fake = FakeExchange()
    f = Failover(["1.1.1.1:53"], exchange=fake)
    _, mw = run(f, make_request(rd=False))
    assert mw.rcode == dns.rcode.SERVFAIL
    assert fake.calls == []


def test_servfail_is_retried_on_fallback():
    fake = FakeExchange()
    f = Failover(["1.1.1.1:53"], exchange=fake)
    req = make_request(rd=True)
    ch, mw = run(f, req)
    assert mw.rcode == dns.rcode.NOERROR
    assert mw.msg.id == req.id
    sent, server = fake.calls[0]
    assert server == "1.1.1.1:53"
    assert sent.flags & dns.flags.RD
    assert sent.ednsflags & dns.flags.DO
    assert sent.payload == 1232
    assert sent.question[0].name.to_text() == "example.com."
    assert ch.writer.written


def test_no_servers_keeps_servfail():
    f = Failover([], exchange=FakeExchange())
    _, mw = run(f, make_request(rd=True))
    assert mw.rcode == dns.rcode.SERVFAIL


def test_all_servers_failing_keeps_servfail():
    fake = FakeExchange(failing={"[::255]:53"})
    f = Failover(["[::255]:53"], exchange=fake)
    _, mw = run(f, make_request(rd=True))
    assert mw.rcode == dns.rcode.SERVFAIL
    assert len(fake.calls) == 1


def test_next_server_used_after_failure():
    fake = FakeExchange(failing={"[::255]:53"})
    f = Failover(["[::255]:53", "1.1.1.1:53"], exchange=fake)
    _, mw = run(f, make_request(rd=True))
    assert mw.rcode == dns.rcode.NOERROR
    assert [server for _, server in fake.calls] == ["[::255]:53", "1.1.1.1:53"]


def test_checking_disabled_copied():
    fake = FakeExchange()
    f = Failover(["1.1.1.1:53"], exchange=fake)
    req = make_request(rd=True)
    req.flags |= dns.flags.CD
    _, mw = run(f, req)
    assert mw.rcode == dns.rcode.NOERROR
    assert mw.msg.flags & dns.flags.CD
    assert fake.calls[0][0].flags & dns.flags.CD


def test_writer_restored_after_serve():
    f = Failover(["1.1.1.1:53"], exchange=FakeExchange())
    ch = Chain([f, ServFail()])
    mw = MemoryWriter("udp", "127.0.0.1:0")
    ch.reset(mw, make_request(rd=True))
    before = ch.writer
    ch.next(None)
    assert ch.writer is before