"""Narrow libvirt capability used by every provisioner.

All libvirt calls of vbmh-lab go through :class:`VirtEntityClient`, which
speaks in terms of *kinds* (``network``, ``pool``, ``volume``, ``domain``,
``nwfilter``) and object names. libvirt "no such object" failures surface as
:class:`~vbmh.exceptions.NotFound` so cleanup code can treat "nothing to
delete" as success; every other rejection surfaces as
:class:`~vbmh.exceptions.VirtError` carrying libvirt's message.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, List, NamedTuple, Optional, Pattern
from xml.etree.ElementTree import Element, ParseError, fromstring, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from vbmh.constants import LAB_METADATA_KEY, LAB_METADATA_URI
from vbmh.exceptions import BackendUnavailable, NotFound, VirtError
from vbmh.utils import log, trailing_index

KINDS = ("network", "pool", "volume", "domain", "nwfilter")


class Handle(NamedTuple):
    kind: str
    name: str
    obj: Any


def _not_found_codes() -> set:
    names = (
        "VIR_ERR_NO_DOMAIN",
        "VIR_ERR_NO_NETWORK",
        "VIR_ERR_NO_STORAGE_POOL",
        "VIR_ERR_NO_STORAGE_VOL",
        "VIR_ERR_NO_NWFILTER",
        "VIR_ERR_NO_DOMAIN_METADATA",
    )
    return {getattr(libvirt, name) for name in names if hasattr(libvirt, name)}


def _error_message(exc: Exception) -> str:
    if hasattr(exc, "get_error_message"):
        message = exc.get_error_message()
        if message:
            return message
    return str(exc)


class VirtEntityClient:
    """list/define/start/destroy/undefine over one libvirt connection."""

    def __init__(self, uri: str) -> None:
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None

    def open(self) -> "VirtEntityClient":
        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise BackendUnavailable(
                f"Unable to connect to libvirt at {self.uri}: {_error_message(exc)}\n"
                "  Check that libvirtd is running and that your user is in the 'libvirt' group."
            ) from exc
        if conn is None:
            raise BackendUnavailable(f"Failed to open libvirt connection to {self.uri}")
        self.conn = conn
        return self

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self) -> "VirtEntityClient":
        if self.conn is None:
            self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def _conn(self):
        if self.conn is None:
            raise BackendUnavailable("libvirt connection not established")
        return self.conn

    @contextmanager
    def _translate(self, action: str, kind: str, name: str) -> Iterator[None]:
        try:
            yield
        except libvirt.libvirtError as exc:
            message = _error_message(exc)
            if exc.get_error_code() in _not_found_codes():
                raise NotFound(f"{kind} '{name}' not found: {message}") from exc
            raise VirtError(f"Failed to {action} {kind} '{name}': {message}") from exc

    # -- discovery ---------------------------------------------------------

    def list(
        self,
        kind: str,
        scope: Optional[str] = None,
        state: str = "all",
        pattern: Optional[Pattern[str]] = None,
    ) -> List[str]:
        """Names of ``kind`` objects, optionally filtered by state and pattern."""
        objects = self._list_objects(kind, scope, state)
        names = [obj.name() for obj in objects]
        if pattern is not None:
            names = [name for name in names if pattern.match(name)]
        return sorted(names, key=lambda name: (trailing_index(name), name))

    def _list_objects(self, kind: str, scope: Optional[str], state: str) -> list:
        if state not in {"active", "inactive", "all"}:
            raise ValueError(f"Unknown state filter '{state}'")
        conn = self._conn
        with self._translate("list", kind, scope or "*"):
            if kind == "network":
                flags = {
                    "active": libvirt.VIR_CONNECT_LIST_NETWORKS_ACTIVE,
                    "inactive": libvirt.VIR_CONNECT_LIST_NETWORKS_INACTIVE,
                    "all": 0,
                }[state]
                return conn.listAllNetworks(flags)
            if kind == "pool":
                flags = {
                    "active": libvirt.VIR_CONNECT_LIST_STORAGE_POOLS_ACTIVE,
                    "inactive": libvirt.VIR_CONNECT_LIST_STORAGE_POOLS_INACTIVE,
                    "all": 0,
                }[state]
                return conn.listAllStoragePools(flags)
            if kind == "domain":
                flags = {
                    "active": libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE,
                    "inactive": libvirt.VIR_CONNECT_LIST_DOMAINS_INACTIVE,
                    "all": 0,
                }[state]
                return conn.listAllDomains(flags)
            if kind == "volume":
                if scope is None:
                    raise ValueError("volume listing requires a pool scope")
                return conn.storagePoolLookupByName(scope).listAllVolumes(0)
            if kind == "nwfilter":
                return conn.listAllNWFilters(0)
        raise ValueError(f"Unknown libvirt object kind '{kind}'")

    def lookup(self, kind: str, name: str, scope: Optional[str] = None) -> Handle:
        conn = self._conn
        with self._translate("look up", kind, name):
            if kind == "network":
                obj = conn.networkLookupByName(name)
            elif kind == "pool":
                obj = conn.storagePoolLookupByName(name)
            elif kind == "volume":
                if scope is None:
                    raise ValueError("volume lookup requires a pool scope")
                obj = conn.storagePoolLookupByName(scope).storageVolLookupByName(name)
            elif kind == "domain":
                obj = conn.lookupByName(name)
            elif kind == "nwfilter":
                obj = conn.nwfilterLookupByName(name)
            else:
                raise ValueError(f"Unknown libvirt object kind '{kind}'")
        return Handle(kind, name, obj)

    def exists(self, kind: str, name: str, scope: Optional[str] = None) -> bool:
        try:
            self.lookup(kind, name, scope)
        except NotFound:
            return False
        return True

    # -- mutation ----------------------------------------------------------

    def define(self, kind: str, name: str, xml: str, scope: Optional[str] = None) -> Handle:
        """Define (volumes: create) ``kind`` from its XML description."""
        conn = self._conn
        with self._translate("define", kind, name):
            if kind == "network":
                obj = conn.networkDefineXML(xml)
            elif kind == "pool":
                obj = conn.storagePoolDefineXML(xml, 0)
            elif kind == "volume":
                if scope is None:
                    raise ValueError("volume creation requires a pool scope")
                obj = conn.storagePoolLookupByName(scope).createXML(xml, 0)
            elif kind == "domain":
                obj = conn.defineXML(xml)
            elif kind == "nwfilter":
                obj = conn.nwfilterDefineXML(xml)
            else:
                raise ValueError(f"Unknown libvirt object kind '{kind}'")
        if obj is None:
            raise VirtError(f"libvirt returned no object defining {kind} '{name}'")
        log("DEBUG", f"Defined {kind} {name}")
        return Handle(kind, name, obj)

    def build(self, handle: Handle) -> None:
        with self._translate("build", handle.kind, handle.name):
            handle.obj.build(0)

    def is_active(self, handle: Handle) -> bool:
        if handle.kind in {"volume", "nwfilter"}:
            return True
        with self._translate("inspect", handle.kind, handle.name):
            return bool(handle.obj.isActive())

    def start(self, handle: Handle) -> None:
        if self.is_active(handle):
            return
        with self._translate("start", handle.kind, handle.name):
            if handle.kind == "pool":
                handle.obj.create(0)
            else:
                handle.obj.create()

    def destroy(self, handle: Handle) -> None:
        """Force-stop ``handle``; a no-op for inactive objects."""
        if not self.is_active(handle) or handle.kind in {"volume", "nwfilter"}:
            return
        with self._translate("destroy", handle.kind, handle.name):
            handle.obj.destroy()

    def undefine(self, handle: Handle) -> None:
        with self._translate("undefine", handle.kind, handle.name):
            if handle.kind == "domain":
                handle.obj.undefineFlags(
                    libvirt.VIR_DOMAIN_UNDEFINE_NVRAM | libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
                )
            elif handle.kind == "volume":
                handle.obj.delete(0)
            else:
                handle.obj.undefine()

    def set_autostart(self, handle: Handle) -> None:
        with self._translate("autostart", handle.kind, handle.name):
            if not handle.obj.autostart():
                handle.obj.setAutostart(1)

    # -- domain details ----------------------------------------------------

    def uuid(self, kind: str, name: str, scope: Optional[str] = None) -> str:
        return self.handle_uuid(self.lookup(kind, name, scope))

    def handle_uuid(self, handle: Handle) -> str:
        with self._translate("read uuid of", handle.kind, handle.name):
            return handle.obj.UUIDString()

    def volume_info(self, handle: Handle) -> tuple:
        """Return ``(capacity_bytes, path)`` of a volume handle."""
        with self._translate("inspect", handle.kind, handle.name):
            _type, capacity, _allocation = handle.obj.info()
            return capacity, handle.obj.path()

    def domain_tag(self, handle: Handle) -> Optional[str]:
        """Return the lab directory recorded in the domain's metadata, if any."""
        try:
            with self._translate("read metadata of", handle.kind, handle.name):
                raw = handle.obj.metadata(libvirt.VIR_DOMAIN_METADATA_ELEMENT, LAB_METADATA_URI, 0)
        except NotFound:
            return None
        try:
            return fromstring(raw).get("dir")
        except ParseError:
            log("WARN", f"Unreadable lab metadata on domain {handle.name}")
            return None

    def set_domain_tag(self, handle: Handle, lab_dir: str, **attrs: str) -> None:
        """Record the owning lab directory in the domain's persistent metadata."""
        element = Element("lab", dir=lab_dir, **attrs)
        with self._translate("tag", handle.kind, handle.name):
            handle.obj.setMetadata(
                libvirt.VIR_DOMAIN_METADATA_ELEMENT,
                tostring(element, encoding="unicode"),
                LAB_METADATA_KEY,
                LAB_METADATA_URI,
                libvirt.VIR_DOMAIN_AFFECT_CONFIG,
            )
