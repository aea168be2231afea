"""Program a raw binary image into flash over a PicobootConnection.

Firmware container formats (UF2 etc.) are the caller's business: pass the
flat image bytes destined for ``base``.
"""
import logging
from typing import Callable, List, Optional

from picoboot.cmd import TargetId
from picoboot.consts import FLASH_START, PAGE_SIZE, SECTOR_SIZE, STACK_POINTER
from picoboot.errors import EraseInvalidAddrError, FlashVerifyError

logger = logging.getLogger(__name__)

DEFAULT_REBOOT_DELAY_MS = 500


def image_pages(image: bytes, page_size: int = PAGE_SIZE) -> List[bytes]:
    """Split ``image`` into page-sized chunks, zero-padding the last one."""
    pages = []
    for i in range(0, len(image), page_size):
        page = bytes(image[i:i + page_size])
        pages.append(page.ljust(page_size, b"\x00"))
    return pages


def reboot_into_firmware(conn, delay_ms: int = DEFAULT_REBOOT_DELAY_MS) -> None:
    """Reboot into the flashed firmware with the command the target supports."""
    if conn.get_device_type() is TargetId.RP2040:
        conn.reboot(0x0, STACK_POINTER, delay_ms)
    else:
        conn.reboot2_normal(delay_ms)


def program_flash(conn, image: bytes, base: int = FLASH_START, verify: bool = True, reboot: bool = True,
                  delay_ms: int = DEFAULT_REBOOT_DELAY_MS,
                  progress: Optional[Callable[[int, int], None]] = None) -> None:
    """Erase, write and optionally verify ``image`` at ``base``, then reboot.

    Args:
        conn: an open PicobootConnection
        image: raw bytes to place at ``base``
        base: flash address, must be sector aligned
        verify: read every page back and compare it to what was written
        reboot: start the new firmware when done
        delay_ms: reboot delay
        progress: called as progress(pages_done, pages_total) after each page
    Raises:
        EraseInvalidAddrError: if ``base`` is not sector aligned
        FlashVerifyError: if a page reads back differently
    """
    if base % SECTOR_SIZE != 0:
        raise EraseInvalidAddrError(detail=f"image base 0x{base:08x}")

    pages = image_pages(image)
    logger.info("Programming %d bytes (%d pages) at 0x%08x", len(image), len(pages), base)

    conn.reset_interface()
    conn.access_exclusive_eject()
    conn.exit_xip()

    for i in range(len(pages)):
        addr = base + i * PAGE_SIZE
        if addr % SECTOR_SIZE == 0:
            conn.flash_erase(addr, SECTOR_SIZE)

    for i, page in enumerate(pages):
        addr = base + i * PAGE_SIZE
        conn.flash_write(addr, page)
        if verify and conn.flash_read(addr, PAGE_SIZE) != page:
            raise FlashVerifyError(addr)
        if progress is not None:
            progress(i + 1, len(pages))

    if reboot:
        logger.info("Rebooting %s into new firmware", conn.get_device_type().name)
        reboot_into_firmware(conn, delay_ms)
