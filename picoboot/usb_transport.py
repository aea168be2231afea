"""Thin synchronous wrapper around PyUSB for the PICOBOOT interface.

Only the primitives the protocol engine needs are exposed. Failures are
raised as ``usb.core.USBError`` and mapped to PicobootError by the caller.
"""
import logging
from typing import Iterator, NamedTuple, Optional, Tuple

import usb.core  # type: ignore
import usb.util  # type: ignore

from picoboot.consts import (
    BULK_READ_TIMEOUT,
    BULK_WRITE_TIMEOUT,
    CONTROL_TIMEOUT,
    PICOBOOT_IFACE_CLASS,
    PICOBOOT_IFACE_PROTOCOL,
    PICOBOOT_IFACE_SUBCLASS,
)

logger = logging.getLogger(__name__)


class EndpointLocation(NamedTuple):
    config: int
    interface: int
    setting: int
    address: int


def _iter_configurations(device) -> Iterator:
    for index in range(device.bNumConfigurations):
        try:
            yield device[index]
        except usb.core.USBError as e:
            logger.debug("skipping unreadable configuration %d: %s", index, e)


def find_bulk_endpoint(device, direction: int, iface_class: int = PICOBOOT_IFACE_CLASS,
                       iface_subclass: int = PICOBOOT_IFACE_SUBCLASS,
                       iface_protocol: int = PICOBOOT_IFACE_PROTOCOL) -> Optional[EndpointLocation]:
    """Walk every configuration, interface and alt setting of ``device`` and
    return the first bulk endpoint in ``direction`` (usb.util.ENDPOINT_IN or
    ENDPOINT_OUT) on an interface matching class/subclass/protocol exactly.
    """
    for cfg in _iter_configurations(device):
        for intf in cfg:  # one entry per (interface, alt setting)
            triple = (intf.bInterfaceClass, intf.bInterfaceSubClass, intf.bInterfaceProtocol)
            if triple != (iface_class, iface_subclass, iface_protocol):
                continue
            for ep in intf:
                if usb.util.endpoint_direction(ep.bEndpointAddress) != direction:
                    continue
                if usb.util.endpoint_type(ep.bmAttributes) != usb.util.ENDPOINT_TYPE_BULK:
                    continue
                return EndpointLocation(cfg.bConfigurationValue, intf.bInterfaceNumber,
                                        intf.bAlternateSetting, ep.bEndpointAddress)
    return None


def find_bulk_endpoints(device, iface_class: int = PICOBOOT_IFACE_CLASS,
                        iface_subclass: int = PICOBOOT_IFACE_SUBCLASS,
                        iface_protocol: int = PICOBOOT_IFACE_PROTOCOL
                        ) -> Tuple[Optional[EndpointLocation], Optional[EndpointLocation]]:
    """Return the (IN, OUT) bulk endpoints of the matching interface; either may be None."""
    ep_in = find_bulk_endpoint(device, usb.util.ENDPOINT_IN, iface_class, iface_subclass, iface_protocol)
    ep_out = find_bulk_endpoint(device, usb.util.ENDPOINT_OUT, iface_class, iface_subclass, iface_protocol)
    return ep_in, ep_out


class UsbHandle:
    """An opened USB device. PyUSB opens the underlying handle on first use."""

    def __init__(self, device: "usb.core.Device"):
        self.device = device

    @property
    def vendor_id(self) -> int:
        return self.device.idVendor

    @property
    def product_id(self) -> int:
        return self.device.idProduct

    def find_bulk_endpoints(self, iface_class: int = PICOBOOT_IFACE_CLASS,
                            iface_subclass: int = PICOBOOT_IFACE_SUBCLASS,
                            iface_protocol: int = PICOBOOT_IFACE_PROTOCOL):
        return find_bulk_endpoints(self.device, iface_class, iface_subclass, iface_protocol)

    def kernel_driver_active(self, iface: int) -> bool:
        try:
            return bool(self.device.is_kernel_driver_active(iface))
        except NotImplementedError:
            # backend has no notion of kernel drivers (Windows, macOS)
            return False

    def detach_kernel_driver(self, iface: int) -> None:
        self.device.detach_kernel_driver(iface)

    def attach_kernel_driver(self, iface: int) -> None:
        self.device.attach_kernel_driver(iface)

    def set_active_config(self, cfg: int) -> None:
        self.device.set_configuration(cfg)

    def claim(self, iface: int) -> None:
        usb.util.claim_interface(self.device, iface)

    def release(self, iface: int) -> None:
        usb.util.release_interface(self.device, iface)

    def set_alt(self, iface: int, setting: int) -> None:
        self.device.set_interface_altsetting(interface=iface, alternate_setting=setting)

    def bulk_read(self, endpoint: int, length: int, timeout: int = BULK_READ_TIMEOUT) -> bytes:
        return bytes(self.device.read(endpoint, length, timeout=timeout))

    def bulk_write(self, endpoint: int, data: bytes, timeout: int = BULK_WRITE_TIMEOUT) -> int:
        return self.device.write(endpoint, data, timeout=timeout)

    def control_in(self, request_type: int, request: int, value: int, index: int, length: int,
                   timeout: int = CONTROL_TIMEOUT) -> bytes:
        return bytes(self.device.ctrl_transfer(request_type, request, value, index, length, timeout=timeout))

    def control_out(self, request_type: int, request: int, value: int, index: int, data: bytes = b"",
                    timeout: int = CONTROL_TIMEOUT) -> int:
        return self.device.ctrl_transfer(request_type, request, value, index, data, timeout=timeout)

    def clear_halt(self, endpoint: int) -> None:
        self.device.clear_halt(endpoint)

    def close(self) -> None:
        usb.util.dispose_resources(self.device)


class UsbContext:
    """Device enumeration over an optional PyUSB backend (None picks the default)."""

    def __init__(self, backend=None):
        self.backend = backend

    def open(self, vid: int, pid: int) -> Optional[UsbHandle]:
        """Return a handle to the first device matching vid:pid, or None."""
        try:
            dev = usb.core.find(idVendor=vid, idProduct=pid, backend=self.backend)
        except usb.core.USBError as e:
            logger.debug("device enumeration failed: %s", e)
            return None
        if dev is None:
            return None
        logger.debug("matched %04x:%04x on bus %s address %s", vid, pid,
                     getattr(dev, 'bus', None), getattr(dev, 'address', None))
        return UsbHandle(dev)
