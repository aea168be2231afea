"""Exceptions raised by the PICOBOOT client.

Every error derives from PicobootError. Errors that wrap a failed USB call
keep the pyusb exception in ``underlying`` and are raised from it.
"""
from typing import Optional


class PicobootError(Exception):
    """Base exception for PICOBOOT failures."""

    description = "picoboot error"

    def __init__(self, underlying: Optional[BaseException] = None, detail: Optional[str] = None):
        self.underlying = underlying
        self.detail = detail
        msg = self.description
        if detail:
            msg = f"{msg} ({detail})"
        if underlying is not None:
            msg = f"{msg}: {underlying}"
        super().__init__(msg)


# --- discovery ---

class UsbDiscoveryError(PicobootError):
    description = "usb discovery failed"


class DeviceNotFoundError(UsbDiscoveryError):
    description = "usb device not found"


class DeviceOpenError(UsbDiscoveryError):
    description = "usb device found but failed to open"


class EndpointsNotFoundError(UsbDiscoveryError):
    description = "failed to get usb bulk endpoints"


class EndpointsUnexpectedError(UsbDiscoveryError):
    description = "usb bulk endpoints are not expected"


# --- attach ---

class UsbAttachError(PicobootError):
    description = "usb attach failed"


class DetachKernelDriverError(UsbAttachError):
    description = "failed to detach usb kernel driver"


class ClaimInterfaceError(UsbAttachError):
    description = "failed to claim usb interface"


class SetAltSettingError(UsbAttachError):
    description = "failed to set alt usb setting"


# --- transfer ---

class UsbTransferError(PicobootError):
    description = "usb transfer failed"


class BulkReadError(UsbTransferError):
    description = "failed to read bulk"


class BulkReadMismatchError(UsbTransferError):
    description = "read did not match expected size"


class BulkWriteError(UsbTransferError):
    description = "failed to write bulk"


class BulkWriteMismatchError(UsbTransferError):
    description = "write did not match expected size"


class ClearInHaltError(UsbTransferError):
    description = "failed to clear in addr halt"


class ClearOutHaltError(UsbTransferError):
    description = "failed to clear out addr halt"


class ResetInterfaceError(UsbTransferError):
    description = "failed to reset interface"


class CommandStatusError(UsbTransferError):
    description = "failed to get command status"


class StaleStatusError(UsbTransferError):
    description = "command status token does not match the command in flight"

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(detail=f"expected token {expected}, got {received}")


# --- codec ---

class CodecError(PicobootError):
    description = "codec failure"


class CmdSerializeError(CodecError):
    description = "cmd failed to binary serialize"


class StatusDeserializeError(CodecError):
    description = "cmd status failed to binary deserialize"


# --- policy (raised before touching the bus) ---

class PolicyError(PicobootError):
    description = "command rejected"


class CmdNotAllowedForTargetError(PolicyError):
    description = "command not allowed for target"


class EraseInvalidAddrError(PolicyError):
    description = "erase address is not sector aligned"


class EraseInvalidSizeError(PolicyError):
    description = "erase size is not a multiple of the sector size"


class WriteInvalidAddrError(PolicyError):
    description = "write address is not page aligned"


class ConnectionClosedError(PicobootError):
    description = "picoboot connection is closed"


class FlashVerifyError(PicobootError):
    description = "flash contents do not match written data"

    def __init__(self, addr: int):
        self.addr = addr
        super().__init__(detail=f"page at 0x{addr:08x}")
