# dnsrelay

`dnsrelay` is the resolving core of a forwarding DNS proxy. You give it a
DNS request wrapped in a `DNSContext`. It answers from its cache or sends the
request to upstream servers you supply, and leaves the response in the
context. Messages are `dns.message.Message` objects from dnspython.

## What is in it

- `dnsrelay.cache`
  - `ResponseCache` stores responses in a size-bounded LRU cache (`ByteCache`,
    64 KiB by default). The key is the DO bit, query type, class and the
    lowercased name. An entry expires at the lowest TTL in the response.
  - Only cacheable responses are stored (`is_cacheable`). Truncated responses
    are refused, and so are responses with a zero TTL or an rcode other than
    NOERROR or NXDOMAIN. A NOERROR A/AAAA response is also refused when it has
    no A or AAAA answer.
  - `SubnetCache` also keys entries by client subnet. `get_with_subnet` tries
    the given mask, then each shorter mask down to 0.
- `dnsrelay.exchange`
  - `UpstreamExchanger` sends a request in one of three `UpstreamMode`s.
  - In load-balance mode it tries upstreams ordered by averaged round-trip
    time and falls through to the next one on failure.
  - In parallel mode (`exchange_parallel`) it returns the first successful
    reply.
  - In fastest-address mode it applies to A/AAAA queries only.
  - When every upstream fails it raises `UpstreamError`.
- `dnsrelay.fastip`
  - `FastestAddr` queries all upstreams and probes every returned address
    over TCP, on ports 80 and 443 by default (`tcp_ports`).
  - It trims the reply to the address that connected first.
  - Probe results are cached for ten minutes.
- `dnsrelay.dns64`
  - `Nat64` holds a 12-byte NAT64 prefix. With it, an AAAA query without
    answers is re-asked as A, and the answers are mapped into the prefix.
- `dnsrelay.ratelimit`
  - `ClientRateLimiter` allows a number of requests per second per client
    IP, given as a `(host, port)` address.
  - Addresses in the whitelist are exempt. Keep the whitelist sorted: it is
    searched by bisection.
- `dnsrelay.helpers`
  - `set_ecs` and `parse_ecs` handle EDNS Client Subnet. The default masks
    are /24 for IPv4 and /112 for IPv6.
  - `is_public_ip` checks whether an address is public.
  - `gen_empty_message` and `gen_empty_no_error` build empty replies carrying
    a negative-caching SOA.
- `dnsrelay.config`
  - `Config` and its `validate()` method. `validate()` raises `ConfigError`.
  - `UpstreamConfig`, with per-domain reserved upstreams, and `DNSContext`.
- `dnsrelay.proxy`
  - `Proxy.resolve` ties the modules together: ECS, cache, exchange, DNS64,
    bogus-NXDOMAIN replacement, fallbacks and the min/max TTL overrides.
  - `Proxy.lookup_ip_addr` resolves A and AAAA in parallel.
  - `check_disabled_aaaa_request` answers AAAA with an empty NOERROR reply.
- `dnsrelay.sema` provides request-count semaphores: `new_semaphore`,
  `LimitSemaphore` and `NoopSemaphore`.
- `dnsrelay.errors.is_epipe` tells whether an error, or any error it wraps,
  is a broken pipe.

## Installation

```
pip install .
pip install .[test]   # with pytest
```

## Usage

An upstream is any object with `exchange(request)`, returning a
`dns.message.Message`, and `address()`, returning a string (see
`dnsrelay.fastip.Upstream`). For example, plain DNS over UDP with dnspython:

```python
import dns.query

from dnsrelay.fastip import Upstream


class UdpUpstream(Upstream):
    def __init__(self, host, port=53, timeout=10.0):
        self.host, self.port, self.timeout = host, port, timeout

    def exchange(self, request):
        return dns.query.udp(request, self.host, port=self.port, timeout=self.timeout)

    def address(self):
        return f"{self.host}:{self.port}"
```

Resolving through the proxy:

```python
import dns.message

from dnsrelay.config import Config, DNSContext, UpstreamConfig
from dnsrelay.proxy import Proxy

config = Config(
    upstream_config=UpstreamConfig(upstreams=[UdpUpstream("192.0.2.53")]),
    cache_enabled=True,
    bogus_nxdomain=["192.0.2.1"],
)
proxy = Proxy(config)
proxy.init()

ctx = DNSContext(proto="udp", req=dns.message.make_query("example.com.", "A"))
proxy.resolve(ctx)   # raises if resolution failed; ctx.res then holds SERVFAIL
print(ctx.res)
```

There are two ways to get a proxy ready:

- `Proxy.init()` prepares caches, the semaphore and the exchanger.
- `Proxy.start()` first validates the configuration and marks the proxy
  running, which `set_nat64_prefix` requires. The configuration must name at
  least one listen address, and at least one default upstream.

Using the cache on its own:

```python
import dns.message

from dnsrelay.cache import ResponseCache

cache = ResponseCache()
reply = dns.message.from_text(
    """id 1
opcode QUERY
rcode NOERROR
flags QR RD
;QUESTION
google.com. IN A
;ANSWER
google.com. 3600 IN A 8.8.8.8
"""
)
cache.set(reply)
cached = cache.get(dns.message.make_query("google.com.", "A"))
print(cached.answer if cached else "miss")
```

## What it does not do

- It does not listen on sockets. The listen addresses in `Config` are only
  checked by `validate()`. `start()` and `stop()` only mark the proxy
  running or stopped. Reading requests from UDP, TCP, TLS, HTTPS, QUIC or
  DNSCrypt clients is left to the caller.
- It has no command-line program.
- It ships no upstream transports: you provide the upstream objects.
- `Proxy.request_semaphore` is created from `max_concurrent_requests`, but
  `resolve` does not take it. Callers that want a limit acquire it
  themselves.

## Running the tests

```
pytest
```