"""Connection to the PICOBOOT interface of an RP2040/RP2350 in BOOTSEL mode.

Every command is a strictly serial transaction:

    bulk OUT  32-byte command frame
    (control IN status poll, best-effort)
    bulk IN/OUT data phase, only if transfer_len != 0
    (control IN status poll, best-effort)
    bulk ack, 1 byte in the direction opposite to the data phase

A connection is not thread-safe. Wrap it in a lock if it must be shared.
"""
import logging
from typing import Optional, Tuple

import usb.core  # type: ignore

from picoboot.cmd import (
    STATUS_SIZE,
    CommandFrame,
    ExclusiveMode,
    StatusFrame,
    TargetId,
    command_allowed,
    decode_status,
    encode_command,
)
from picoboot.consts import (
    PAGE_SIZE,
    PICOBOOT_PID_RP2040,
    PICOBOOT_PID_RP2350,
    PICOBOOT_VID,
    REQUEST_GET_COMMAND_STATUS,
    REQUEST_INTERFACE_RESET,
    REQUEST_TYPE_IN_VENDOR_IFACE,
    REQUEST_TYPE_OUT_VENDOR_IFACE,
    SECTOR_SIZE,
)
from picoboot.errors import (
    BulkReadError,
    BulkReadMismatchError,
    BulkWriteError,
    BulkWriteMismatchError,
    ClaimInterfaceError,
    ClearInHaltError,
    ClearOutHaltError,
    CmdNotAllowedForTargetError,
    CmdSerializeError,
    CommandStatusError,
    ConnectionClosedError,
    DetachKernelDriverError,
    DeviceNotFoundError,
    DeviceOpenError,
    EndpointsNotFoundError,
    EndpointsUnexpectedError,
    EraseInvalidAddrError,
    EraseInvalidSizeError,
    PicobootError,
    ResetInterfaceError,
    SetAltSettingError,
    StaleStatusError,
    WriteInvalidAddrError,
)
from picoboot.usb_transport import UsbContext, UsbHandle

logger = logging.getLogger(__name__)


def _open_target(ctx, vidpid: Optional[Tuple[int, int]]) -> Tuple[Optional[UsbHandle], Optional[TargetId]]:
    if vidpid is not None:
        vid, pid = vidpid
        # any pair other than the RP2040 one is assumed to be an RP2350 board
        if (vid, pid) == (PICOBOOT_VID, PICOBOOT_PID_RP2040):
            target_id = TargetId.RP2040
        else:
            target_id = TargetId.RP2350
        handle = ctx.open(vid, pid)
        return (handle, target_id) if handle is not None else (None, None)

    for pid, target_id in ((PICOBOOT_PID_RP2040, TargetId.RP2040), (PICOBOOT_PID_RP2350, TargetId.RP2350)):
        handle = ctx.open(PICOBOOT_VID, pid)
        if handle is not None:
            return handle, target_id
    return None, None


class PicobootConnection:
    """Exclusive owner of a claimed PICOBOOT interface.

    Use :meth:`open` to find a device, then call :meth:`reset_interface`
    before the first command. Teardown (interface release and kernel driver
    re-attach) runs on :meth:`close`, on leaving a ``with`` block, and on
    garbage collection.
    """

    def __init__(self, handle: UsbHandle, target_id: TargetId, verify_status_token: bool = True):
        self._handle = handle
        self._target_id = target_id
        self._verify_status_token = verify_status_token
        self._claimed = False
        self._has_kernel_driver = False
        self._closed = False
        self._cmd_token = 1
        self.last_status: Optional[StatusFrame] = None

        try:
            self._attach()
        except BaseException:
            self._teardown()
            raise

    @classmethod
    def open(cls, ctx: Optional[UsbContext] = None, vidpid: Optional[Tuple[int, int]] = None,
             verify_status_token: bool = True) -> 'PicobootConnection':
        """Find a BOOTSEL device and claim its PICOBOOT interface.

        Args:
            ctx: device enumerator; a default UsbContext when None
            vidpid: explicit (vid, pid); None tries the RP2040 then the RP2350 ids
            verify_status_token: fail with StaleStatusError if a status poll
                reports a token other than the command in flight
        """
        if ctx is None:
            ctx = UsbContext()
        handle, target_id = _open_target(ctx, vidpid)
        if handle is None:
            raise DeviceNotFoundError(detail=f"vid:pid {vidpid[0]:04x}:{vidpid[1]:04x}" if vidpid else None)
        logger.info("Found %s in BOOTSEL mode (%04x:%04x)", target_id.name, handle.vendor_id, handle.product_id)
        return cls(handle, target_id, verify_status_token)

    def _attach(self) -> None:
        ep_in, ep_out = self._handle.find_bulk_endpoints()
        if ep_in is None or ep_out is None:
            raise EndpointsNotFoundError()
        if ep_in[:3] != ep_out[:3]:
            raise EndpointsUnexpectedError(
                detail=f"in on cfg/iface/alt {tuple(ep_in[:3])}, out on {tuple(ep_out[:3])}")

        self._cfg, self._iface, self._setting = ep_out.config, ep_out.interface, ep_out.setting
        self._in_addr = ep_in.address
        self._out_addr = ep_out.address
        logger.debug("PICOBOOT interface: cfg=%d iface=%d alt=%d in=0x%02x out=0x%02x",
                     self._cfg, self._iface, self._setting, self._in_addr, self._out_addr)

        # PyUSB opens the device lazily, so this is the first call that can
        # fail on permissions
        try:
            kernel_driver_active = self._handle.kernel_driver_active(self._iface)
        except usb.core.USBError as e:
            raise DeviceOpenError(e) from e
        if kernel_driver_active:
            try:
                self._handle.detach_kernel_driver(self._iface)
            except usb.core.USBError as e:
                raise DetachKernelDriverError(e) from e
            self._has_kernel_driver = True

        # Setting configuration often fails where the kernel already owns it
        try:
            self._handle.set_active_config(self._cfg)
        except usb.core.USBError as e:
            logger.debug("could not set active configuration %d: %s", self._cfg, e)

        try:
            self._handle.claim(self._iface)
        except usb.core.USBError as e:
            raise ClaimInterfaceError(e) from e
        self._claimed = True

        try:
            self._handle.set_alt(self._iface, self._setting)
        except usb.core.USBError as e:
            raise SetAltSettingError(e) from e

    def _teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        handle = self._handle
        iface = getattr(self, '_iface', None)
        if self._claimed:
            try:
                handle.release(iface)
            except Exception as e:
                logger.warning("could not release interface %d: %s", iface, e)
            self._claimed = False
        if self._has_kernel_driver:
            try:
                handle.attach_kernel_driver(iface)
            except Exception as e:
                logger.warning("could not reattach kernel driver to interface %d: %s", iface, e)
            self._has_kernel_driver = False
        try:
            handle.close()
        except Exception as e:
            logger.warning("could not dispose usb resources: %s", e)

    def close(self) -> None:
        """Release the interface and give it back to the kernel driver. Idempotent."""
        if not self._closed:
            self._teardown()
            logger.info("PICOBOOT connection closed")

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> 'PicobootConnection':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __del__(self):
        # __init__ may have failed before any attribute was set
        if getattr(self, '_closed', True):
            return
        try:
            self._teardown()
        except Exception:  # pragma: no cover
            pass

    # --- properties ---

    @property
    def target_id(self) -> TargetId:
        return self._target_id

    @property
    def interface(self) -> int:
        return self._iface

    @property
    def in_endpoint(self) -> int:
        return self._in_addr

    @property
    def out_endpoint(self) -> int:
        return self._out_addr

    @property
    def next_token(self) -> int:
        return self._cmd_token

    def get_device_type(self) -> TargetId:
        return self._target_id

    def _ensure_open(self) -> None:
        # PyUSB would silently reopen and reclaim a disposed device
        if self._closed:
            raise ConnectionClosedError()

    # --- transfers ---

    def _bulk_read(self, size: int, check: bool) -> bytes:
        try:
            data = self._handle.bulk_read(self._in_addr, size)
        except usb.core.USBError as e:
            raise BulkReadError(e) from e
        if check and len(data) != size:
            raise BulkReadMismatchError(detail=f"expected {size} bytes, got {len(data)}")
        return data

    def _bulk_write(self, data: bytes, check: bool) -> None:
        try:
            written = self._handle.bulk_write(self._out_addr, data)
        except usb.core.USBError as e:
            raise BulkWriteError(e) from e
        if check and written != len(data):
            raise BulkWriteMismatchError(detail=f"expected {len(data)} bytes, wrote {written}")

    def get_command_status(self) -> StatusFrame:
        """Query the status of the last command over the control endpoint."""
        self._ensure_open()
        try:
            raw = self._handle.control_in(REQUEST_TYPE_IN_VENDOR_IFACE, REQUEST_GET_COMMAND_STATUS, 0,
                                          self._iface, STATUS_SIZE)
        except usb.core.USBError as e:
            raise CommandStatusError(e) from e
        status = decode_status(raw)
        self.last_status = status
        logger.debug("status: token=%d code=%r cmd=0x%02x in_progress=%d",
                     status.token, status.status_code, status.cmd_id, status.in_progress)
        return status

    def _poll_status(self, token: int) -> None:
        # Diagnostic only; the ack phase is what synchronizes the transaction
        try:
            status = self.get_command_status()
        except PicobootError as e:
            logger.debug("ignoring status poll failure: %s", e)
            return
        if self._verify_status_token and status.token != token:
            raise StaleStatusError(token, status.token)

    def cmd(self, frame: CommandFrame, data: bytes = b"") -> bytes:
        """Run one command transaction and return the bytes of a device-to-host
        data phase (empty otherwise).
        """
        self._ensure_open()
        if not command_allowed(self._target_id, frame.cmd_id):
            raise CmdNotAllowedForTargetError(detail=f"{frame.name} on {self._target_id.name}")
        if not frame.is_device_to_host and len(data) != frame.transfer_len:
            raise CmdSerializeError(
                detail=f"payload is {len(data)} bytes but transfer_len is {frame.transfer_len}")

        # tokens are u32 on the wire and never wrap
        if self._cmd_token > 0xFFFFFFFF:
            raise CmdSerializeError(detail="command token space exhausted")
        frame = frame.with_token(self._cmd_token)
        self._cmd_token += 1
        raw = encode_command(frame)
        logger.debug("cmd %s token=%d transfer_len=%d: %s", frame.name, frame.token, frame.transfer_len, raw.hex())

        self._bulk_write(raw, check=True)
        self._poll_status(frame.token)

        result = b""
        if frame.transfer_len != 0:
            if frame.is_device_to_host:
                result = self._bulk_read(frame.transfer_len, check=True)
            else:
                self._bulk_write(data, check=True)
            self._poll_status(frame.token)

        # ack in the opposite direction; length is not checked
        if frame.is_device_to_host:
            self._bulk_write(b"\x00", check=False)
        else:
            self._bulk_read(1, check=False)

        return result

    # --- commands ---

    def access_not_exclusive(self) -> None:
        self._set_exclusive_access(ExclusiveMode.NOT_EXCLUSIVE)

    def access_exclusive(self) -> None:
        self._set_exclusive_access(ExclusiveMode.EXCLUSIVE)

    def access_exclusive_eject(self) -> None:
        """Exclusive access, and eject the mass storage drive on the host."""
        self._set_exclusive_access(ExclusiveMode.EXCLUSIVE_AND_EJECT)

    def _set_exclusive_access(self, mode: ExclusiveMode) -> None:
        self.cmd(CommandFrame.exclusive_access(mode))

    def reboot(self, pc: int, sp: int, delay_ms: int) -> None:
        """Reboot into code at ``pc`` with stack ``sp``; pc=0 boots from flash."""
        self.cmd(CommandFrame.reboot(pc, sp, delay_ms))

    def reboot2_normal(self, delay_ms: int) -> None:
        """RP2350 only: normal reboot after ``delay_ms``."""
        self.cmd(CommandFrame.reboot2_normal(delay_ms))

    def flash_erase(self, addr: int, size: int) -> None:
        if addr % SECTOR_SIZE != 0:
            raise EraseInvalidAddrError(detail=f"0x{addr:08x}")
        if size % SECTOR_SIZE != 0:
            raise EraseInvalidSizeError(detail=f"0x{size:x}")
        self.cmd(CommandFrame.flash_erase(addr, size))

    def flash_write(self, addr: int, buf: bytes) -> None:
        """Write ``buf`` at ``addr``. The flash must be erased first and
        ``buf`` should be padded to a whole number of pages.
        """
        if addr % PAGE_SIZE != 0:
            raise WriteInvalidAddrError(detail=f"0x{addr:08x}")
        buf = bytes(buf)
        self.cmd(CommandFrame.flash_write(addr, len(buf)), buf)

    def flash_read(self, addr: int, size: int) -> bytes:
        return self.cmd(CommandFrame.flash_read(addr, size))

    def enter_xip(self) -> None:
        self.cmd(CommandFrame.enter_xip())

    def exit_xip(self) -> None:
        self.cmd(CommandFrame.exit_xip())

    def reset_interface(self) -> None:
        """Clear endpoint halts and reset the PICOBOOT interface state.

        Call right after opening, and after any failed transaction.
        """
        self._ensure_open()
        try:
            self._handle.clear_halt(self._in_addr)
        except usb.core.USBError as e:
            raise ClearInHaltError(e) from e
        try:
            self._handle.clear_halt(self._out_addr)
        except usb.core.USBError as e:
            raise ClearOutHaltError(e) from e
        try:
            self._handle.control_out(REQUEST_TYPE_OUT_VENDOR_IFACE, REQUEST_INTERFACE_RESET, 0, self._iface, b"")
        except usb.core.USBError as e:
            raise ResetInterfaceError(e) from e
