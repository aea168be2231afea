"""In-memory stand-ins for the USB transport.

FakeHandle implements the UsbHandle interface and plays the device side of
the PICOBOOT protocol against a sparse flash model, recording every call.
"""
import pytest
import usb.core

from picoboot.cmd import CMD_SIZE, CommandId, Status, StatusFrame, decode_command, encode_status
from picoboot.consts import PICOBOOT_PID_RP2040, PICOBOOT_PID_RP2350, PICOBOOT_VID
from picoboot.usb_transport import EndpointLocation

EP_IN = 0x84
EP_OUT = 0x03
PICOBOOT_IFACE = 1

DEFAULT_ENDPOINTS = (
    EndpointLocation(1, PICOBOOT_IFACE, 0, EP_IN),
    EndpointLocation(1, PICOBOOT_IFACE, 0, EP_OUT),
)


class FakeHandle:
    def __init__(self, vendor_id=PICOBOOT_VID, product_id=PICOBOOT_PID_RP2040, endpoints=DEFAULT_ENDPOINTS,
                 kernel_driver=False):
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.endpoints = endpoints
        self.kernel_driver = kernel_driver
        self.calls = []
        self.failures = {}
        self.frames = []  # decoded command frames, in order
        self.transfers = []  # ('out', ep, bytes) / ('in', ep, requested, bytes)
        self.memory = {}
        self.status_token = None  # overrides the echoed token when set
        self.corrupt_reads = False
        self.closed = False
        self._phase = 'idle'
        self._current = None

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    def call_names(self):
        return [c[0] for c in self.calls]

    # --- setup ---

    def find_bulk_endpoints(self):
        self._call('find_bulk_endpoints')
        return self.endpoints

    def kernel_driver_active(self, iface):
        self._call('kernel_driver_active', iface)
        return self.kernel_driver

    def detach_kernel_driver(self, iface):
        self._call('detach_kernel_driver', iface)

    def attach_kernel_driver(self, iface):
        self._call('attach_kernel_driver', iface)

    def set_active_config(self, cfg):
        self._call('set_active_config', cfg)

    def claim(self, iface):
        self._call('claim', iface)

    def release(self, iface):
        self._call('release', iface)

    def set_alt(self, iface, setting):
        self._call('set_alt', iface, setting)

    def clear_halt(self, endpoint):
        self._call('clear_halt', endpoint)

    def close(self):
        self._call('close')
        self.closed = True

    # --- device model ---

    def _read_memory(self, addr, size):
        data = bytes(self.memory.get(a, 0xFF) for a in range(addr, addr + size))
        if self.corrupt_reads and data:
            data = bytes([data[0] ^ 0xFF]) + data[1:]
        return data

    def _start(self, raw):
        frame = decode_command(raw)
        self.frames.append(frame)
        self._current = frame
        addr, size = int.from_bytes(frame.args[0:4], 'little'), int.from_bytes(frame.args[4:8], 'little')
        if frame.cmd_id == CommandId.FLASH_ERASE:
            for a in range(addr, addr + size):
                self.memory.pop(a, None)
        if frame.transfer_len:
            self._phase = 'data_in' if frame.is_device_to_host else 'data_out'
        else:
            self._phase = 'ack_out' if frame.is_device_to_host else 'ack_in'

    def bulk_write(self, endpoint, data, timeout=None):
        data = bytes(data)
        self._call('bulk_write', endpoint, data)
        self.transfers.append(('out', endpoint, data))
        if self._phase == 'idle':
            if len(data) != CMD_SIZE:
                raise usb.core.USBError('Pipe error')
            self._start(data)
        elif self._phase == 'data_out':
            addr = int.from_bytes(self._current.args[0:4], 'little')
            for i, b in enumerate(data):
                self.memory[addr + i] = b
            self._phase = 'ack_in'
        elif self._phase == 'ack_out':
            self._phase = 'idle'
        else:
            raise usb.core.USBError('Pipe error')
        return len(data)

    def bulk_read(self, endpoint, length, timeout=None):
        self._call('bulk_read', endpoint, length)
        if self._phase == 'data_in':
            addr = int.from_bytes(self._current.args[0:4], 'little')
            data = self._read_memory(addr, length)
            self._phase = 'ack_out'
        elif self._phase == 'ack_in':
            data = b""  # zero length ack packet
            self._phase = 'idle'
        else:
            raise usb.core.USBError('Pipe error')
        self.transfers.append(('in', endpoint, length, data))
        return data

    def control_in(self, request_type, request, value, index, length, timeout=None):
        self._call('control_in', request_type, request, value, index, length)
        token, cmd_id = (self._current.token, self._current.cmd_id) if self._current else (0, 0)
        if self.status_token is not None:
            token = self.status_token
        return encode_status(StatusFrame(token, Status.OK, cmd_id, 0))

    def control_out(self, request_type, request, value, index, data=b"", timeout=None):
        self._call('control_out', request_type, request, value, index, bytes(data))
        self._phase = 'idle'
        return 0


class FakeContext:
    def __init__(self, *handles):
        self.handles = list(handles)
        self.lookups = []

    def open(self, vid, pid):
        self.lookups.append((vid, pid))
        for handle in self.handles:
            if (handle.vendor_id, handle.product_id) == (vid, pid):
                return handle
        return None


@pytest.fixture
def rp2040_handle():
    return FakeHandle()


@pytest.fixture
def rp2350_handle():
    return FakeHandle(product_id=PICOBOOT_PID_RP2350)


@pytest.fixture
def usb_error():
    def make(msg='Input/Output Error'):
        return usb.core.USBError(msg)
    return make
