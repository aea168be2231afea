"""PICOBOOT wire codec.

The device memcopies command frames straight into a packed C struct, so the
layouts below are byte-exact, little-endian and have no padding:

    typedef struct __packed {
        uint32_t dMagic;
        uint32_t dToken;
        uint8_t  bCmdId;         // bit 7 set: data phase is device-to-host
        uint8_t  bCmdSize;       // meaningful bytes in args
        uint16_t _unused;
        uint32_t dTransferLength;
        uint8_t  args[16];
    } picoboot_cmd;              // 32 bytes

    typedef struct __packed {
        uint32_t dToken;
        uint32_t dStatusCode;
        uint8_t  bCmdId;
        uint8_t  bInProgress;
        uint8_t  _pad[6];
    } picoboot_cmd_status;       // 16 bytes

See section 2.8.5 of the RP2040 datasheet for the interface description.
"""
import enum
import struct
from typing import NamedTuple, Union

from picoboot.consts import PICOBOOT_MAGIC
from picoboot.errors import CmdSerializeError, StatusDeserializeError

CMD_STRUCT = '<IIBBHI16s'
CMD_SIZE = struct.calcsize(CMD_STRUCT)  # 32
STATUS_STRUCT = '<IIBB6x'
STATUS_SIZE = struct.calcsize(STATUS_STRUCT)  # 16
ARGS_SIZE = 16

# args layouts
RANGE_ARGS_STRUCT = '<II8x'  # addr, size
REBOOT_ARGS_STRUCT = '<III4x'  # pc, sp, delay_ms
REBOOT2_ARGS_STRUCT = '<IIII'  # flags, delay_ms, p0, p1
EXCLUSIVE_ARGS_STRUCT = '<B15x'  # mode

REBOOT2_FLAG_REBOOT_TYPE_NORMAL = 0x0

DIR_DEVICE_TO_HOST = 0x80


class TargetId(enum.Enum):
    RP2040 = 'rp2040'
    RP2350 = 'rp2350'


class CommandId(enum.IntEnum):
    UNKNOWN = 0x00
    EXCLUSIVE_ACCESS = 0x01
    REBOOT = 0x02
    FLASH_ERASE = 0x03
    READ = 0x84  # RAM or flash
    WRITE = 0x05  # RAM or flash, no erase
    EXIT_XIP = 0x06
    ENTER_CMD_XIP = 0x07
    EXEC = 0x08
    VECTORIZE_FLASH = 0x09
    # RP2350 only below here
    REBOOT2 = 0x0A
    GET_INFO = 0x8B
    OTP_READ = 0x8C
    OTP_WRITE = 0x0D

    @property
    def is_device_to_host(self) -> bool:
        return bool(self & DIR_DEVICE_TO_HOST)


RP2350_ONLY_COMMANDS = frozenset({
    CommandId.REBOOT2,
    CommandId.GET_INFO,
    CommandId.OTP_READ,
    CommandId.OTP_WRITE,
})


def command_allowed(target_id: TargetId, cmd_id: int) -> bool:
    """Whether ``target_id`` accepts opcode ``cmd_id``."""
    if target_id is TargetId.RP2040:
        return cmd_id not in RP2350_ONLY_COMMANDS
    return True


class ExclusiveMode(enum.IntEnum):
    NOT_EXCLUSIVE = 0
    EXCLUSIVE = 1
    EXCLUSIVE_AND_EJECT = 2


class UnknownStatus(int):
    """A status code outside the range the datasheet defines, kept verbatim."""

    name = 'UNKNOWN'

    def __repr__(self):
        return f"UnknownStatus({int(self)})"


class Status(enum.IntEnum):
    OK = 0
    UNKNOWN_CMD = 1
    INVALID_CMD_LENGTH = 2
    INVALID_TRANSFER_LENGTH = 3
    INVALID_ADDRESS = 4
    BAD_ALIGNMENT = 5
    INTERLEAVED_WRITE = 6
    REBOOTING = 7
    UNKNOWN_ERROR = 8
    INVALID_STATE = 9
    NOT_PERMITTED = 10
    INVALID_ARG = 11
    BUFFER_TOO_SMALL = 12
    PRECONDITION_NOT_MET = 13
    MODIFIED_DATA = 14
    INVALID_DATA = 15
    NOT_FOUND = 16
    UNSUPPORTED_MODIFICATION = 17

    @classmethod
    def decode(cls, value: int) -> Union['Status', UnknownStatus]:
        try:
            return cls(value)
        except ValueError:
            return UnknownStatus(value)


class StatusFrame(NamedTuple):
    token: int
    status_code: Union[Status, UnknownStatus]
    cmd_id: int
    in_progress: int

    @property
    def ok(self) -> bool:
        return self.status_code == Status.OK


class CommandFrame(NamedTuple):
    cmd_id: int
    cmd_size: int
    transfer_len: int
    args: bytes = bytes(ARGS_SIZE)
    token: int = 0
    magic: int = PICOBOOT_MAGIC

    @property
    def is_device_to_host(self) -> bool:
        return bool(self.cmd_id & DIR_DEVICE_TO_HOST)

    @property
    def name(self) -> str:
        try:
            return CommandId(self.cmd_id).name
        except ValueError:
            return f"0x{self.cmd_id:02x}"

    def with_token(self, token: int) -> 'CommandFrame':
        return self._replace(token=token)

    @classmethod
    def exclusive_access(cls, mode: int) -> 'CommandFrame':
        return cls(CommandId.EXCLUSIVE_ACCESS, 1, 0, _pack_args(EXCLUSIVE_ARGS_STRUCT, mode))

    @classmethod
    def reboot(cls, pc: int, sp: int, delay_ms: int) -> 'CommandFrame':
        args = _pack_args(REBOOT_ARGS_STRUCT, pc, sp, delay_ms)
        return cls(CommandId.REBOOT, 12, 0, args)

    @classmethod
    def reboot2_normal(cls, delay_ms: int) -> 'CommandFrame':
        args = _pack_args(REBOOT2_ARGS_STRUCT, REBOOT2_FLAG_REBOOT_TYPE_NORMAL, delay_ms, 0, 0)
        return cls(CommandId.REBOOT2, 16, 0, args)

    @classmethod
    def flash_erase(cls, addr: int, size: int) -> 'CommandFrame':
        return cls(CommandId.FLASH_ERASE, 8, 0, _pack_args(RANGE_ARGS_STRUCT, addr, size))

    @classmethod
    def flash_write(cls, addr: int, size: int) -> 'CommandFrame':
        return cls(CommandId.WRITE, 8, size, _pack_args(RANGE_ARGS_STRUCT, addr, size))

    @classmethod
    def flash_read(cls, addr: int, size: int) -> 'CommandFrame':
        return cls(CommandId.READ, 8, size, _pack_args(RANGE_ARGS_STRUCT, addr, size))

    @classmethod
    def enter_xip(cls) -> 'CommandFrame':
        return cls(CommandId.ENTER_CMD_XIP, 0, 0)

    @classmethod
    def exit_xip(cls) -> 'CommandFrame':
        return cls(CommandId.EXIT_XIP, 0, 0)


def _pack_args(fmt: str, *values: int) -> bytes:
    try:
        return struct.pack(fmt, *values)
    except struct.error as e:
        raise CmdSerializeError(e, detail=f"args {values!r}") from e


def encode_command(frame: CommandFrame) -> bytes:
    """Serialize ``frame`` to the 32-byte wire layout."""
    if len(frame.args) != ARGS_SIZE:
        # struct's 's' format would silently pad or truncate
        raise CmdSerializeError(detail=f"args must be {ARGS_SIZE} bytes, got {len(frame.args)}")
    try:
        raw = struct.pack(CMD_STRUCT, frame.magic, frame.token, frame.cmd_id, frame.cmd_size, 0,
                          frame.transfer_len, bytes(frame.args))
    except struct.error as e:
        raise CmdSerializeError(e) from e
    assert len(raw) == CMD_SIZE
    return raw


def decode_command(raw: bytes) -> CommandFrame:
    """Parse a 32-byte command frame; used for tracing and by test doubles."""
    if len(raw) != CMD_SIZE:
        raise CmdSerializeError(detail=f"expected {CMD_SIZE} bytes, got {len(raw)}")
    magic, token, cmd_id, cmd_size, _unused, transfer_len, args = struct.unpack(CMD_STRUCT, bytes(raw))
    return CommandFrame(cmd_id, cmd_size, transfer_len, args, token, magic)


def encode_status(frame: StatusFrame) -> bytes:
    return struct.pack(STATUS_STRUCT, frame.token, int(frame.status_code), frame.cmd_id, frame.in_progress)


def decode_status(raw: bytes) -> StatusFrame:
    """Parse the 16-byte reply to a GET_COMMAND_STATUS control request."""
    if len(raw) != STATUS_SIZE:
        raise StatusDeserializeError(detail=f"expected {STATUS_SIZE} bytes, got {len(raw)}")
    token, status_code, cmd_id, in_progress = struct.unpack(STATUS_STRUCT, bytes(raw))
    return StatusFrame(token, Status.decode(status_code), cmd_id, in_progress)
