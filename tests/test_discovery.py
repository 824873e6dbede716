"""Tests for link discovery backends."""

import asyncio
import json
import threading
import time
from ipaddress import IPv4Address

import pytest

from config import APP_ID
from discovery.models import (
    ConnectionFormed,
    ConnectionLost,
    DiscoveryBeacon,
    Peer,
    PeerListChanged,
)
from discovery.service import DiscoveryProtocol, LanLinkDiscovery, ManualLinkDiscovery
from session.models import Role


def collect(discovery):
    events = []

    async def record(event):
        events.append(event)

    discovery.on_event(record)
    return events


def peer(device_id, role, ip="192.168.49.10", last_seen=None):
    return Peer(
        device_id=device_id,
        device_name=f"device-{device_id}",
        ip_address=ip,
        role=role,
        last_seen=time.time() if last_seen is None else last_seen,
    )


@pytest.mark.asyncio
async def test_manual_discovery_emits_events():
    discovery = ManualLinkDiscovery()
    events = collect(discovery)

    await discovery.report_connection_formed(False, "192.168.49.1")
    assert isinstance(events[-1], ConnectionFormed)
    assert events[-1].group_owner_address == IPv4Address("192.168.49.1")
    assert discovery.connection_info() == events[-1]

    await discovery.report_peers([peer("a", Role.HOST)])
    assert isinstance(events[-1], PeerListChanged)
    assert [p.device_id for p in await discovery.get_peers()] == ["a"]

    await discovery.report_connection_lost()
    assert isinstance(events[-1], ConnectionLost)
    assert discovery.connection_info() is None


@pytest.mark.asyncio
async def test_failing_callback_does_not_block_others():
    discovery = ManualLinkDiscovery()

    async def broken(event):
        raise RuntimeError("boom")

    discovery.on_event(broken)
    events = collect(discovery)
    await discovery.report_connection_lost()
    assert len(events) == 1


@pytest.mark.asyncio
async def test_client_forms_link_with_first_host_beacon():
    discovery = LanLinkDiscovery()
    discovery.set_role(Role.CLIENT)
    events = collect(discovery)

    await discovery.update_peer(peer("other-client", Role.CLIENT, ip="192.168.49.20"))
    assert not any(isinstance(e, ConnectionFormed) for e in events)

    await discovery.update_peer(peer("host", Role.HOST, ip="192.168.49.1"))
    formed = [e for e in events if isinstance(e, ConnectionFormed)]
    assert len(formed) == 1
    assert not formed[0].is_group_owner
    assert formed[0].group_owner_address == IPv4Address("192.168.49.1")

    # Refreshing the same host does not form the link again
    await discovery.update_peer(peer("host", Role.HOST, ip="192.168.49.1"))
    assert len([e for e in events if isinstance(e, ConnectionFormed)]) == 1


@pytest.mark.asyncio
async def test_host_forms_link_with_client_beacon(monkeypatch):
    monkeypatch.setattr(
        "discovery.service.find_link_address", lambda subnet: "192.168.49.1"
    )
    discovery = LanLinkDiscovery()
    discovery.set_role(Role.HOST)
    events = collect(discovery)

    await discovery.update_peer(peer("client", Role.CLIENT))
    formed = [e for e in events if isinstance(e, ConnectionFormed)]
    assert formed[0].is_group_owner
    assert formed[0].group_owner_address == IPv4Address("192.168.49.1")


@pytest.mark.asyncio
async def test_counterpart_timeout_loses_link():
    discovery = LanLinkDiscovery(peer_timeout=10)
    discovery.set_role(Role.CLIENT)
    events = collect(discovery)

    await discovery.update_peer(peer("host", Role.HOST, last_seen=100.0))
    await discovery.update_peer(peer("bystander", None, last_seen=105.0))

    await discovery.expire_peers(now=112.0)
    assert isinstance(events[-1], ConnectionLost)
    assert discovery.connection_info() is None
    assert [p.device_id for p in await discovery.get_peers()] == ["bystander"]


@pytest.mark.asyncio
async def test_no_link_without_role():
    discovery = LanLinkDiscovery()
    events = collect(discovery)
    await discovery.update_peer(peer("host", Role.HOST))
    assert [type(e) for e in events] == [PeerListChanged]


@pytest.mark.asyncio
async def test_protocol_ignores_own_and_foreign_beacons():
    discovery = LanLinkDiscovery()
    protocol = DiscoveryProtocol(discovery)

    def beacon(**overrides):
        fields = dict(
            app_id=APP_ID,
            device_id="someone",
            device_name="phone",
            role="host",
            transfer_port=8988,
            platform="linux",
        )
        fields.update(overrides)
        return json.dumps(DiscoveryBeacon(**fields).model_dump(mode="json")).encode()

    protocol.datagram_received(beacon(device_id=discovery.device_id), ("192.168.49.5", 1))
    protocol.datagram_received(beacon(app_id="other-app"), ("192.168.49.6", 1))
    protocol.datagram_received(b"not json", ("192.168.49.7", 1))
    protocol.datagram_received(beacon(), ("192.168.49.8", 1))

    # update_peer runs as a scheduled task
    for _ in range(10):
        if await discovery.get_peers():
            break
        await asyncio.sleep(0)

    peers = await discovery.get_peers()
    assert [(p.device_id, p.ip_address, p.role) for p in peers] == [
        ("someone", "192.168.49.8", Role.HOST)
    ]


@pytest.mark.asyncio
async def test_host_address_lookup_runs_off_the_event_loop(monkeypatch):
    loop_thread = threading.get_ident()
    lookup_threads = []

    def lookup(subnet):
        lookup_threads.append(threading.get_ident())
        return "192.168.49.1"

    monkeypatch.setattr("discovery.service.find_link_address", lookup)
    discovery = LanLinkDiscovery()
    discovery.set_role(Role.HOST)
    events = collect(discovery)

    await discovery.update_peer(peer("client", Role.CLIENT))
    assert any(isinstance(e, ConnectionFormed) for e in events)
    assert lookup_threads and lookup_threads[0] != loop_thread


@pytest.mark.asyncio
async def test_protocol_tracks_pending_updates_until_done():
    discovery = LanLinkDiscovery()
    protocol = DiscoveryProtocol(discovery)
    beacon = DiscoveryBeacon(
        app_id=APP_ID,
        device_id="someone",
        device_name="phone",
        role="client",
        transfer_port=8988,
        platform="linux",
    )

    protocol.datagram_received(
        json.dumps(beacon.model_dump(mode="json")).encode(), ("192.168.49.8", 1)
    )
    pending = list(protocol._pending)
    assert len(pending) == 1

    await asyncio.gather(*pending)
    await asyncio.sleep(0)
    assert not protocol._pending
    assert [p.device_id for p in await discovery.get_peers()] == ["someone"]
