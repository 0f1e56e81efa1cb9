import dns.message
import dns.rcode

from sdns.middleware.chain import Chain, Handler, MemoryWriter
from sdns.middleware.loop import Loop


class Recorder(Handler):
    name = "recorder"

    def __init__(self):
        self.contexts = []

    def serve_dns(self, ctx, chain):
        self.contexts.append(ctx)


def request():
    return dns.message.make_query("example.com.", "A")


def test_name():
    assert Loop().name == "loop"


def test_loop_detected():
    loop = Loop()
    chain = Chain([loop] * 11)
    writer = MemoryWriter("udp", "127.0.0.1:0")
    chain.reset(writer, request())

    loop.serve_dns(None, chain)

    assert writer.written
    assert writer.msg.rcode() == dns.rcode.SERVFAIL


def test_short_chain_is_not_a_loop():
    loop = Loop()
    chain = Chain([loop] * 5)
    writer = MemoryWriter("udp", "127.0.0.1:0")
    chain.reset(writer, request())

    loop.serve_dns(None, chain)

    assert not writer.written


def test_context_is_extended_without_mutation():
    recorder = Recorder()
    chain = Chain([recorder])
    chain.reset(MemoryWriter("udp", "127.0.0.1:0"), request())
    ctx = {"other": 1}

    Loop().serve_dns(ctx, chain)

    passed = recorder.contexts[0]
    assert passed["other"] == 1
    assert passed["loopcheck:example.com.:A"] == ["example.com.:A"]
    assert ctx == {"other": 1}