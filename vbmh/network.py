"""Lab network definition and the per-domain interface XML."""

from __future__ import annotations

from typing import Optional
from xml.etree.ElementTree import Element, SubElement, tostring

from vbmh.exceptions import NetworkDefinitionError, NotFound, VirtError
from vbmh.models import NetworkDescriptor
from vbmh.utils import log
from vbmh.virt import VirtEntityClient


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def render_network_xml(descriptor: NetworkDescriptor) -> str:
    """NAT-forwarding bridged network. DHCP is left to the provisioning stack under test."""
    net = Element("network")
    SubElement(net, "name").text = descriptor.name
    SubElement(net, "forward", mode="nat")
    SubElement(net, "bridge", name=descriptor.bridge, stp="on", delay="0")
    SubElement(net, "ip", address=descriptor.gateway, netmask=descriptor.netmask)
    return _element_to_str(net)


def render_interface_xml(
    network_name: str,
    mac_address: str,
    boot_order: Optional[int] = None,
    filter_name: Optional[str] = None,
    model: str = "virtio",
) -> str:
    """Render a domain <interface> attached to the lab network."""
    iface = Element("interface", type="network")
    SubElement(iface, "mac", address=mac_address.lower())
    SubElement(iface, "source", network=network_name)
    SubElement(iface, "model", type=model)
    if boot_order is not None:
        SubElement(iface, "boot", order=str(boot_order))
    if filter_name:
        SubElement(iface, "filterref", filter=filter_name)
    return _element_to_str(iface)


def render_airgap_filter_xml(name: str, descriptor: NetworkDescriptor) -> str:
    """Traffic filter that keeps a domain inside the lab subnet."""
    subnet = descriptor.network_address
    prefix = str(descriptor.prefixlen)
    flt = Element("filter", name=name, chain="root")
    # ARP and DHCP are needed for PXE inside the segment.
    SubElement(flt, "filterref", filter="allow-arp")
    SubElement(flt, "filterref", filter="allow-dhcp")
    for direction in ("out", "in"):
        rule = SubElement(flt, "rule", action="accept", direction=direction, priority="500")
        if direction == "out":
            SubElement(rule, "ip", dstipaddr=subnet, dstipmask=prefix)
        else:
            SubElement(rule, "ip", srcipaddr=subnet, srcipmask=prefix)
    drop = SubElement(flt, "rule", action="drop", direction="inout", priority="1000")
    SubElement(drop, "all")
    return _element_to_str(flt)


class NetworkProvisioner:
    def __init__(self, client: VirtEntityClient) -> None:
        self.client = client

    def ensure_network(self, descriptor: NetworkDescriptor) -> None:
        if descriptor.name in self.client.list("network", state="active"):
            log("INFO", f"Network {descriptor.name} already exists")
            return

        try:
            handle = self.client.lookup("network", descriptor.name)
        except NotFound:
            log("INFO", f"Creating network {descriptor.name} (bridge {descriptor.bridge}, {descriptor.subnet})")
            try:
                handle = self.client.define("network", descriptor.name, render_network_xml(descriptor))
            except VirtError as exc:
                raise NetworkDefinitionError(str(exc)) from exc
        else:
            log("INFO", f"Network {descriptor.name} defined but inactive; starting it")

        try:
            self.client.start(handle)
            self.client.set_autostart(handle)
        except VirtError as exc:
            raise NetworkDefinitionError(str(exc)) from exc
        log("SUCCESS", f"Network {descriptor.name} active on bridge {descriptor.bridge}")

    def ensure_airgap_filter(self, name: str, descriptor: NetworkDescriptor) -> None:
        if name in self.client.list("nwfilter"):
            log("INFO", f"Traffic filter {name} already exists")
            return
        try:
            self.client.define("nwfilter", name, render_airgap_filter_xml(name, descriptor))
        except VirtError as exc:
            raise NetworkDefinitionError(str(exc)) from exc
        log("SUCCESS", f"Defined airgap traffic filter {name}")
