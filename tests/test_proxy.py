import ipaddress

import dns.message
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import pytest

from dnsrelay.config import Config, ConfigError, DNSContext, UpstreamConfig, UpstreamMode
from dnsrelay.fastip import Upstream
from dnsrelay.helpers import make_reply, parse_ecs, set_ecs
from dnsrelay.proxy import Proxy, check_disabled_aaaa_request

NAT64_PREFIX = bytes([32, 1, 6, 124, 39, 228, 16, 100, 0, 0, 0, 0])


class FakeUpstream(Upstream):
    def __init__(self, answers=None, ttl=60, name="fake"):
        self.answers = answers or {}
        self.ttl = ttl
        self.name = name
        self.ecs_ip = None
        self.ecs_req_ip = None
        self.calls = 0

    def exchange(self, request):
        self.calls += 1
        resp = make_reply(request)
        question = request.question[0]
        for ip in self.answers.get(question.rdtype, []):
            rrset = resp.find_rrset(
                resp.answer, question.name, dns.rdataclass.IN, question.rdtype, create=True
            )
            rrset.add(dns.rdata.from_text(dns.rdataclass.IN, question.rdtype, ip), self.ttl)
        self.ecs_req_ip, _, _ = parse_ecs(request)
        if self.ecs_ip is not None:
            set_ecs(resp, self.ecs_ip, 24)
        return resp

    def address(self):
        return self.name


class FailingUpstream(Upstream):
    def __init__(self, name="failing"):
        self.name = name
        self.calls = 0

    def exchange(self, request):
        self.calls += 1
        raise OSError("connection refused")

    def address(self):
        return self.name


def a_answers(*ips):
    return {dns.rdatatype.A: list(ips)}


def make_proxy(upstream, **kwargs):
    config = Config(
        udp_listen_addr=[("127.0.0.1", 0)],
        tcp_listen_addr=[("127.0.0.1", 0)],
        upstream_config=UpstreamConfig(upstreams=[upstream]),
        **kwargs,
    )
    return Proxy(config)


def host_query(host, rdtype=dns.rdatatype.A):
    return dns.message.make_query(host + ".", rdtype)


def first_a(msg):
    for rrset in msg.answer:
        if rrset.rdtype == dns.rdatatype.A:
            for rdata in rrset:
                return ipaddress.ip_address(rdata.address)
    return None


def test_start_without_listeners_fails():
    proxy = Proxy(Config(upstream_config=UpstreamConfig(upstreams=[FakeUpstream()])))
    with pytest.raises(ConfigError, match="no listen address specified"):
        proxy.start()
    assert proxy.started is False


def test_start_twice_fails_and_stop_resets():
    proxy = make_proxy(FakeUpstream())
    proxy.start()
    assert proxy.started is True
    with pytest.raises(ConfigError, match="already started"):
        proxy.start()
    proxy.stop()
    assert proxy.started is False
    proxy.stop()
    assert proxy.started is False


def test_resolve_basic():
    upstream = FakeUpstream(a_answers("8.8.8.8"))
    proxy = make_proxy(upstream)
    proxy.start()
    ctx = DNSContext(req=host_query("google-public-dns-a.google.com"))
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("8.8.8.8")
    assert ctx.upstream is upstream


def test_bogus_nxdomain_type_a():
    upstream = FakeUpstream(a_answers("4.3.2.1"), ttl=10)
    proxy = make_proxy(upstream, cache_enabled=True, bogus_nxdomain=["4.3.2.1"])
    proxy.start()

    ctx = DNSContext(req=host_query("host"), addr=("1.2.3.0", 0))
    proxy.resolve(ctx)
    assert ctx.res.rcode() == dns.rcode.NXDOMAIN

    upstream.answers = a_answers("4.3.2.2")
    proxy.resolve(ctx)
    assert ctx.res.rcode() == dns.rcode.NOERROR

    # served from the cache, so the bogus address never shows up
    upstream.answers = a_answers("4.3.2.2", "4.3.2.1")
    proxy.resolve(ctx)
    assert ctx.res.rcode() == dns.rcode.NOERROR
    assert first_a(ctx.res) == ipaddress.ip_address("4.3.2.2")


def test_is_bogus_nxdomain_ignores_other_qtypes():
    proxy = Proxy(Config(bogus_nxdomain=["4.3.2.1"]))
    request = host_query("host", dns.rdatatype.MX)
    reply = make_reply(request)
    assert proxy.is_bogus_nxdomain(reply) is False
    assert proxy.is_bogus_nxdomain(None) is False


def test_cache_expiration_with_ttl_override():
    upstream = FakeUpstream(a_answers("4.3.2.1"), ttl=10)
    proxy = make_proxy(upstream, cache_enabled=True, cache_min_ttl=20, cache_max_ttl=40)
    proxy.start()

    ctx = DNSContext(req=host_query("host"), addr=("0.0.0.0", 0))
    proxy.resolve(ctx)
    cached = proxy.cache.get(ctx.req)
    assert cached is not None
    assert 19 <= cached.answer[0].ttl <= 20

    upstream.ttl = 60
    ctx.req = host_query("host2")
    proxy.resolve(ctx)
    cached = proxy.cache.get(ctx.req)
    assert cached is not None
    assert 39 <= cached.answer[0].ttl <= 40


def test_exchange_custom_upstream_config():
    default = FailingUpstream()
    proxy = make_proxy(default)
    proxy.start()
    custom = FakeUpstream(a_answers("4.3.2.1"))
    ctx = DNSContext(
        req=host_query("host"),
        addr=("1.2.3.0", 0),
        custom_upstream_config=UpstreamConfig(upstreams=[custom]),
    )
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("4.3.2.1")
    assert default.calls == 0


def test_reserved_domains():
    good = FakeUpstream(a_answers("8.8.8.8"))
    reserved = FailingUpstream()
    config = Config(
        udp_listen_addr=[("127.0.0.1", 0)],
        upstream_config=UpstreamConfig(
            upstreams=[good], domain_reserved_upstreams={"adguard.com": [reserved]}
        ),
    )
    proxy = Proxy(config)
    proxy.start()

    ctx = DNSContext(req=host_query("www.adguard.com"))
    with pytest.raises(OSError):
        proxy.resolve(ctx)
    assert ctx.res.rcode() == dns.rcode.SERVFAIL
    assert not ctx.res.answer

    ctx = DNSContext(req=host_query("google.com"))
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("8.8.8.8")


def test_fallback():
    good = FakeUpstream(a_answers("8.8.8.8"))
    proxy = make_proxy(FailingUpstream(), fallbacks=[FailingUpstream("f1"), good])
    proxy.start()
    ctx = DNSContext(req=host_query("google-public-dns-a.google.com"))
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("8.8.8.8")
    assert ctx.upstream is good


def test_one_by_one_upstreams_exchange():
    good = FakeUpstream(a_answers("8.8.8.8"), name="good")
    config = Config(
        udp_listen_addr=[("127.0.0.1", 0)],
        upstream_config=UpstreamConfig(upstreams=[FailingUpstream("a"), FailingUpstream("b"), good]),
    )
    proxy = Proxy(config)
    proxy.start()
    ctx = DNSContext(req=host_query("google-public-dns-a.google.com"))
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("8.8.8.8")


def test_parallel_mode():
    good = FakeUpstream(a_answers("8.8.8.8"), name="good")
    config = Config(
        udp_listen_addr=[("127.0.0.1", 0)],
        upstream_config=UpstreamConfig(upstreams=[FailingUpstream(), good]),
        upstream_mode=UpstreamMode.PARALLEL,
    )
    proxy = Proxy(config)
    proxy.start()
    ctx = DNSContext(req=host_query("google.com"))
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("8.8.8.8")
    assert ctx.upstream is good


def test_response_handler_receives_error():
    seen = []
    proxy = make_proxy(FailingUpstream(), response_handler=lambda ctx, err: seen.append((ctx, err)))
    proxy.start()
    ctx = DNSContext(req=host_query("host"))
    with pytest.raises(OSError):
        proxy.resolve(ctx)
    assert len(seen) == 1
    assert seen[0][0] is ctx
    assert isinstance(seen[0][1], OSError)


def test_ecs_proxy():
    upstream = FakeUpstream()
    proxy = make_proxy(upstream, enable_edns_client_subnet=True, cache_enabled=True)
    proxy.start()

    ctx = DNSContext(req=host_query("host"), addr=("1.2.3.0", 0))
    upstream.answers = a_answers("4.3.2.1")
    upstream.ecs_ip = "1.2.3.0"
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("4.3.2.1")
    assert upstream.ecs_req_ip == ipaddress.ip_address("1.2.3.0")

    # same subnet, served from cache
    ctx = DNSContext(req=host_query("host"), addr=("1.2.3.1", 0))
    upstream.answers = {}
    upstream.ecs_ip = None
    upstream.ecs_req_ip = None
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("4.3.2.1")
    assert upstream.ecs_req_ip is None

    # different subnet, different response
    ctx = DNSContext(req=host_query("host"), addr=("2.2.3.0", 0))
    upstream.answers = a_answers("4.3.2.2")
    upstream.ecs_ip = "2.2.3.0"
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("4.3.2.2")
    assert upstream.ecs_req_ip == ipaddress.ip_address("2.2.3.0")

    # local client: no ECS, general cache
    ctx = DNSContext(req=host_query("host"), addr=("127.0.0.1", 0))
    upstream.answers = a_answers("4.3.2.3")
    upstream.ecs_ip = None
    upstream.ecs_req_ip = None
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("4.3.2.3")
    assert upstream.ecs_req_ip is None

    ctx = DNSContext(req=host_query("host"), addr=("127.0.0.2", 0))
    upstream.answers = {}
    proxy.resolve(ctx)
    assert first_a(ctx.res) == ipaddress.ip_address("4.3.2.3")
    assert upstream.ecs_req_ip is None


def test_ecs_proxy_cache_min_max_ttl():
    upstream = FakeUpstream(a_answers("4.3.2.1"), ttl=10)
    proxy = make_proxy(
        upstream,
        enable_edns_client_subnet=True,
        cache_enabled=True,
        cache_min_ttl=20,
        cache_max_ttl=40,
    )
    proxy.start()

    upstream.ecs_ip = "1.2.3.0"
    ctx = DNSContext(req=host_query("host"), addr=("1.2.3.0", 0))
    proxy.resolve(ctx)
    cached = proxy.cache_subnet.get_with_subnet(ctx.req, ipaddress.ip_address("1.2.3.0"), 24)
    assert 19 <= cached.answer[0].ttl <= 20

    upstream.ttl = 60
    upstream.ecs_ip = "1.2.4.0"
    ctx = DNSContext(req=host_query("host"), addr=("1.2.4.0", 0))
    proxy.resolve(ctx)
    cached = proxy.cache_subnet.get_with_subnet(ctx.req, ipaddress.ip_address("1.2.4.0"), 24)
    assert 39 <= cached.answer[0].ttl <= 40


def test_dns64_mapping():
    upstream = FakeUpstream(a_answers("1.2.3.4"))
    proxy = make_proxy(upstream)
    proxy.set_nat64_prefix(NAT64_PREFIX)
    assert proxy.nat64.is_prefix_available() is False

    proxy.start()
    proxy.set_nat64_prefix(NAT64_PREFIX)
    assert proxy.nat64.is_prefix_available() is True

    ctx = DNSContext(req=host_query("and.ru", dns.rdatatype.AAAA))
    proxy.resolve(ctx)
    rrset = ctx.res.answer[0]
    assert rrset.rdtype == dns.rdatatype.AAAA
    addresses = [ipaddress.ip_address(rdata.address) for rdata in rrset]
    assert addresses == [ipaddress.ip_address("2001:67c:27e4:1064::102:304")]


def test_lookup_ip_addr():
    upstream = FakeUpstream(
        {
            dns.rdatatype.A: ["8.8.8.8", "8.8.4.4"],
            dns.rdatatype.AAAA: ["2001:4860:4860::8888"],
        }
    )
    proxy = Proxy(Config(upstream_config=UpstreamConfig(upstreams=[upstream])))
    proxy.init()
    addrs = proxy.lookup_ip_addr("dns.google")
    assert len(addrs) == 3
    assert set(addrs) == {
        ipaddress.ip_address("8.8.8.8"),
        ipaddress.ip_address("8.8.4.4"),
        ipaddress.ip_address("2001:4860:4860::8888"),
    }
    assert addrs[-1] == ipaddress.ip_address("2001:4860:4860::8888")


def test_lookup_ip_addr_all_failed():
    proxy = Proxy(Config(upstream_config=UpstreamConfig(upstreams=[FailingUpstream()])))
    proxy.init()
    with pytest.raises(OSError):
        proxy.lookup_ip_addr("dns.google")


def test_ratelimiting():
    proxy = Proxy(Config(ratelimit=1))
    addr = ("127.0.0.1", 1232)
    assert proxy.is_ratelimited(addr) is False
    assert proxy.is_ratelimited(addr) is True


def test_ratelimit_whitelist():
    proxy = Proxy(Config(ratelimit=1, ratelimit_whitelist=["127.0.0.1", "127.0.0.2", "127.0.0.125"]))
    addr = ("127.0.0.1", 1232)
    assert proxy.is_ratelimited(addr) is False
    assert proxy.is_ratelimited(addr) is False


def test_check_disabled_aaaa_request():
    ctx = DNSContext(req=host_query("host", dns.rdatatype.AAAA))
    assert check_disabled_aaaa_request(ctx, True) is True
    assert ctx.res.rcode() == dns.rcode.NOERROR
    assert not ctx.res.answer
    assert ctx.res.authority[0].rdtype == dns.rdatatype.SOA

    ctx = DNSContext(req=host_query("host", dns.rdatatype.A))
    assert check_disabled_aaaa_request(ctx, True) is False
    assert ctx.res is None

    ctx = DNSContext(req=host_query("host", dns.rdatatype.AAAA))
    assert check_disabled_aaaa_request(ctx, False) is False