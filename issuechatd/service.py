from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable

import RNS

from .codec import encode
from .config import ChatRuntimeConfig
from .constants import E_PING
from .envelope import make_envelope
from .messages import CborFileMessageLog, MemoryMessageLog, MessageLog
from .router import EventRouter, Outgoing
from .stats import StatsManager
from .util import expand_path


def _hex(value, *, prefix: int = 0) -> str:
    if not isinstance(value, (bytes, bytearray)):
        return "-"
    s = bytes(value).hex()
    return s[:prefix] if prefix > 0 else s


class HubService:
    """Hosts the issue chat hub on a Reticulum destination.

    Every established link becomes one chat session. Reticulum delivers link
    callbacks on its own threads and the liveness and announce loops run on
    theirs, so sessions, rooms and presence only change under ``_state_lock``.
    Payloads produced by the router are sent after the lock is released.
    """

    def __init__(self, config: ChatRuntimeConfig, *, store: MessageLog | None = None) -> None:
        self.config = config
        self.log = logging.getLogger("issuechatd.hub")

        self._state_lock = threading.RLock()
        self._stopping = threading.Event()
        self._workers: list[threading.Thread] = []

        self.stats_manager = StatsManager(self._state_lock)
        self.store = store if store is not None else self._open_store()
        self.router = EventRouter(config, self.store, stats=self.stats_manager)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

    def _open_store(self) -> MessageLog:
        if not self.config.message_log_dir:
            self.log.warning("No message_log_dir configured; chat history lives in memory only")
            return MemoryMessageLog()
        root = expand_path(str(self.config.message_log_dir))
        self.log.info("Message log dir=%s", root)
        return CborFileMessageLog(root)

    # Lifecycle

    def start(self) -> None:
        self.log.info("Starting Reticulum configdir=%s", self.config.configdir or "(default)")
        self.stats_manager.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        self.identity = self._read_identity()
        self.destination = self._create_destination(self.identity)

        if self.config.announce_on_start:
            self._announce()
        if self.config.announce_period_s > 0:
            self._spawn("issuechatd-announce", self._announce_loop)
        if self.config.ping_interval_s > 0:
            self._spawn("issuechatd-liveness", self._liveness_loop)

        self.log.info(
            "Issue chat hub up name=%s dest_name=%s dest_hash=%s",
            self.config.hub_name,
            self.config.dest_name,
            _hex(self.destination.hash),
        )
        self.log.info(
            "Policy roles=%s presence_broadcast=%s max_text_chars=%s rate_limit_msgs_per_minute=%s",
            ",".join(self.config.allowed_roles),
            self.config.presence_broadcast,
            self.config.max_text_chars,
            self.config.rate_limit_msgs_per_minute,
        )

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda *_: self.stop())

        while not self._stopping.wait(0.25):
            pass

    def stop(self) -> None:
        if self._stopping.is_set():
            return
        self._stopping.set()

        with self._state_lock:
            self.log.info("%s", self.format_stats())
            links = self.router.sessions.clear_all()
            self.router.rooms.clear_all()
            self.router.presence.clear_all()

        for link in links:
            self._close_link(link)

        self.store.close()
        self.log.info("Issue chat hub stopped")

    def format_stats(self) -> str:
        with self._state_lock:
            return self.stats_manager.format_stats(
                session_stats=self.router.sessions.get_stats(),
                room_stats=self.router.rooms.get_stats(),
                presence_stats=self.router.presence.get_stats(),
            )

    def _read_identity(self) -> RNS.Identity:
        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        path = expand_path(self.config.identity_path)
        if not os.path.exists(path):
            raise RuntimeError(f"Hub identity missing at {path}")
        ident = RNS.Identity.from_file(path)
        if ident is None:
            raise RuntimeError(f"Hub identity at {path} could not be loaded")
        return ident

    def _create_destination(self, identity: RNS.Identity) -> RNS.Destination:
        app_name, *aspects = [p for p in str(self.config.dest_name).split(".") if p] or [""]
        if not app_name:
            raise ValueError("dest_name must not be empty")
        dest = RNS.Destination(
            identity, RNS.Destination.IN, RNS.Destination.SINGLE, app_name, *aspects
        )
        dest.set_link_established_callback(self._link_established)
        return dest

    def _spawn(self, name: str, target: Callable[[], None]) -> None:
        t = threading.Thread(target=target, name=name, daemon=True)
        t.start()
        self._workers.append(t)

    def _announce(self) -> None:
        if self.destination is None:
            return
        app_data = encode({"proto": "issuechat", "v": 1, "hub": self.config.hub_name})
        try:
            self.destination.announce(app_data=app_data)
        except Exception:
            self.log.exception("Announce failed dest_name=%s", self.config.dest_name)
            return
        self.stats_manager.inc("announces")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._stopping.wait(period):
            self._announce()

    # Link callbacks

    def _link_established(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.router.connect(link)

        link.set_packet_callback(lambda data, _packet: self._packet_received(link, data))
        link.set_link_closed_callback(self._link_closed)
        link.set_remote_identified_callback(self._peer_identified)

        self.log.info("Session opened link_id=%s", _hex(link.link_id))

    def _peer_identified(self, link: RNS.Link, identity: RNS.Identity | None) -> None:
        if identity is None:
            return
        with self._state_lock:
            sess = self.router.sessions.get_session(link)
            if sess is not None:
                sess.peer = identity.hash
        self.log.info(
            "Peer identified peer=%s link_id=%s",
            _hex(identity.hash, prefix=12),
            _hex(link.link_id),
        )

    def _link_closed(self, link: RNS.Link) -> None:
        outgoing: Outgoing = []
        with self._state_lock:
            sess = self.router.disconnect(link, outgoing)
        self._deliver(outgoing)

        self.log.info(
            "Session closed peer=%s user=%s link_id=%s",
            _hex(sess.peer if sess else None, prefix=12),
            sess.user_id if sess else None,
            _hex(link.link_id),
        )

    def _packet_received(self, link: RNS.Link, data: bytes) -> None:
        outgoing: Outgoing = []
        with self._state_lock:
            sess = self.router.sessions.get_session(link)
            if sess is None:
                return
            if sess.peer is None:
                remote = link.get_remote_identity()
                if remote is None:
                    # Chat traffic is only accepted from identified peers.
                    return
                sess.peer = remote.hash
            self.router.route_packet(link, data, outgoing)

        if outgoing and self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Delivering %d frame(s) for link_id=%s", len(outgoing), _hex(link.link_id)
            )
        self._deliver(outgoing)

    # Outbound

    def _deliver(self, outgoing: Outgoing) -> None:
        for link, payload in outgoing:
            try:
                RNS.Packet(link, payload).send()
            except OSError as e:
                # Usually a frame that does not fit the link MTU.
                self.log.warning(
                    "Frame dropped link_id=%s bytes=%s err=%s",
                    _hex(link.link_id),
                    len(payload),
                    e,
                )
            except Exception:
                self.log.debug(
                    "Frame dropped link_id=%s bytes=%s",
                    _hex(getattr(link, "link_id", None)),
                    len(payload),
                    exc_info=True,
                )

    def _close_link(self, link: RNS.Link) -> None:
        try:
            link.teardown()
        except Exception:
            self.log.debug("Teardown failed link_id=%s", _hex(link.link_id), exc_info=True)

    # Liveness

    def _liveness_loop(self) -> None:
        interval = float(self.config.ping_interval_s)
        while not self._stopping.wait(interval):
            to_ping, expired = self._liveness_sweep(time.monotonic())

            for link in expired:
                self.log.info("No pong in time, closing link_id=%s", _hex(link.link_id))
                # Closing fires _link_closed, which does the session cleanup.
                self._close_link(link)

            if to_ping:
                frame = encode(make_envelope(E_PING, body={"ts": int(time.time() * 1000)}))
                self._deliver([(link, frame) for link in to_ping])
                self.stats_manager.inc("pings_out", len(to_ping))

    def _liveness_sweep(self, now: float) -> tuple[list, list]:
        """Split sessions into ones to ping now and ones whose ping expired."""
        timeout = float(self.config.ping_timeout_s)
        to_ping: list = []
        expired: list = []
        with self._state_lock:
            for link, sess in self.router.sessions.sessions.items():
                if sess.awaiting_pong is None:
                    sess.awaiting_pong = now
                    to_ping.append(link)
                elif timeout > 0 and now - sess.awaiting_pong > timeout:
                    expired.append(link)
        return to_ping, expired
