# RP MCU flash layout
PAGE_SIZE = 0x100  # write granularity
SECTOR_SIZE = 0x1000  # erase granularity
FLASH_START = 0x10000000
STACK_POINTER = 0x20042000  # SRAM_END on RP2040

# BOOTSEL USB ids
PICOBOOT_VID = 0x2E8A
PICOBOOT_PID_RP2040 = 0x0003
PICOBOOT_PID_RP2350 = 0x000F

PICOBOOT_MAGIC = 0x431FD10B

# PICOBOOT interface is vendor specific
PICOBOOT_IFACE_CLASS = 0xFF
PICOBOOT_IFACE_SUBCLASS = 0x00
PICOBOOT_IFACE_PROTOCOL = 0x00

# Vendor control requests on the PICOBOOT interface
# bmRequestType: Type=Vendor | Recipient=Interface
REQUEST_TYPE_OUT_VENDOR_IFACE = 0x41
REQUEST_TYPE_IN_VENDOR_IFACE = 0xC1
REQUEST_INTERFACE_RESET = 0x41
REQUEST_GET_COMMAND_STATUS = 0x42

# Timeouts (milliseconds)
BULK_READ_TIMEOUT = 3000
BULK_WRITE_TIMEOUT = 5000
CONTROL_TIMEOUT = 1000

# UF2 family ids, for callers routing firmware by target
UF2_RP2040_FAMILY_ID = 0xE48BFF56
UF2_RP2350_ARM_S_FAMILY_ID = 0xE48BFF59
UF2_RP2350_RISCV_FAMILY_ID = 0xE48BFF5A
UF2_RP2350_ARM_NS_FAMILY_ID = 0xE48BFF5B
