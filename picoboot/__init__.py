"""Host-side client for the PICOBOOT USB interface of RP2040/RP2350 devices in BOOTSEL mode.

Example::

    from picoboot import PicobootConnection, program_flash

    with PicobootConnection.open() as conn:
        with open("blink.bin", "rb") as f:
            program_flash(conn, f.read())
"""
from picoboot.cmd import (
    CommandFrame,
    CommandId,
    ExclusiveMode,
    Status,
    StatusFrame,
    TargetId,
    UnknownStatus,
    decode_status,
    encode_command,
)
from picoboot.connection import PicobootConnection
from picoboot.consts import (
    FLASH_START,
    PAGE_SIZE,
    PICOBOOT_MAGIC,
    PICOBOOT_PID_RP2040,
    PICOBOOT_PID_RP2350,
    PICOBOOT_VID,
    SECTOR_SIZE,
    STACK_POINTER,
    UF2_RP2040_FAMILY_ID,
    UF2_RP2350_ARM_NS_FAMILY_ID,
    UF2_RP2350_ARM_S_FAMILY_ID,
    UF2_RP2350_RISCV_FAMILY_ID,
)
from picoboot.errors import PicobootError
from picoboot.flash import image_pages, program_flash, reboot_into_firmware
from picoboot.usb_transport import UsbContext, UsbHandle

__version__ = "0.1.0"
