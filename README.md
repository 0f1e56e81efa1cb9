# sdns

Building blocks for a privacy-minded recursive DNS resolver, built on
`dnspython`.

## What is in it

- `sdns.cache`: a sharded cache with random eviction (`Cache`, `Shard`),
  the errors `CacheNotFoundError` and `CacheExpiredError`, a pure-Python
  `xxhash64` and `hash_question(name, qtype, cd)`, which gives a
  case-insensitive cache key for a question.
- `sdns.authcache`: authoritative server bookkeeping (`IPVersion`,
  `AuthServer`, `AuthServers`, `sort_servers`) and `NSCache`, a delegation
  cache whose TTLs are clamped between one and twelve hours.
- `sdns.dnsutil`: message helpers: `extract_address_from_reverse`,
  `is_reverse`, `set_rcode`, `set_edns0` (returns an `EdnsInfo`),
  `generate_server_cookie`, `clear_opt`, `clear_dnssec`,
  `parse_purge_question`, `not_supported`, and `minimal_ttl` with the
  `ResponseType` classification it takes.
- `sdns.middleware.chain`: the `Handler` base class, the `Chain` that runs
  handlers in order, the chain's `ResponseWriter` (which refuses a second
  response with `AlreadyWrittenError`) and `MemoryWriter`, a writer that
  keeps the response in memory.
- `sdns.middleware.registry`: `Registry`, an ordered list of middleware
  factories (`register`, `register_at`, `register_before`) that `setup`
  turns into handlers once.
- Handlers, each in its own module under `sdns.middleware`:
  - `AS112`: NXDOMAIN or SOA answers for private and reserved reverse zones.
  - `BlockList`: null-route answers for blocked names; `update` downloads
    hosts-style lists into a directory and `read_directory` loads them.
  - `Hostsfile`: A, AAAA and PTR answers from a hosts file, re-read every
    five seconds when it changes.
  - `Chaos`: CHAOS-class TXT answers for `version.bind.`, `version.server.`,
    `hostname.bind.` and `id.server.`.
  - `Loop`: SERVFAIL once the same question has passed through more than ten
    times.
  - `EDNS`: normalises EDNS, rejects unsupported opcodes and versions, adds
    cookies and NSID, strips DNSSEC records when DO is unset and truncates
    oversized UDP replies.
  - `AccessList`: drops clients outside the given CIDR ranges.
  - `AccessLog`: one line per answered client query in a log file.
  - `RateLimit`: per-client token buckets (`TokenBucket`) with DNS cookie
    handling.
  - `Failover`: retries SERVFAIL answers against fallback servers.
  - `Forwarder`: answers from the first upstream server that replies.
  - `Metrics`: counts responses by qtype and rcode; `render()` returns them in
    the Prometheus text format.

`Failover` and `Forwarder` send queries over UDP with `dns.query.udp` unless
given an `exchange` callable of their own.

## Installation

```
pip install .
```

## Example

```python
import dns.message
import dns.rdatatype

from sdns.middleware.blocklist import BlockList
from sdns.middleware.chain import Chain, MemoryWriter

blocklist = BlockList("0.0.0.0", "::")
blocklist.set("ads.example.com.")

chain = Chain([blocklist])
request = dns.message.make_query("ads.example.com.", dns.rdatatype.A)
writer = MemoryWriter("udp", "127.0.0.1:0")
chain.reset(writer, request)
chain.next({})

print(writer.msg.answer)
```

Handlers receive a context mapping and the chain; each one either answers
through `chain.writer` and cancels the chain, or passes the request on with
`chain.next(ctx)`.

## What it does not do

The package has no command, no network listener and no HTTP API: it does not
accept queries from clients on its own. It has no recursive resolution and
no response-caching handler; `Cache` and `NSCache` are data structures for
such code to use. There is no configuration file loader; every handler is
built from plain constructor arguments.

## Tests

```
pip install .[test]
pytest
```