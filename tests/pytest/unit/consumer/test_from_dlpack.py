import numpy as np
import pytest

from dlhandoff import (
    CapsuleStateError,
    CopyPolicyError,
    ImportConfig,
    Importer,
    MalformedHandleError,
    NDArray,
    UnsupportedDeviceError,
    VersionMismatchError,
    from_dlpack,
)
from dlhandoff.handles import ExchangeHandle
from dlhandoff.itf import Producer
from dlhandoff.producers import HostProducer
from dlhandoff.types import (
    DLDataTypeCode,
    DLDeviceType,
    DataType,
    Device,
    ManagedTensor,
    PROTOCOL_VERSION,
    TensorDescriptor,
    TensorFlags,
)

CUDA = Device(DLDeviceType.kDLCUDA, 0)
CUDA_HOST = Device(DLDeviceType.kDLCUDAHost, 0)


class CountingDeleter:
    def __init__(self):
        self.calls = 0

    def __call__(self, managed):
        self.calls += 1


class FakeProducer(Producer):
    """Producer recording its export arguments, returning canned handles.

    Device memory is never dereferenced, a fake address stands for it.
    """

    def __init__(self, device=CUDA, version=PROTOCOL_VERSION, flags=TensorFlags.NONE):
        self.device = device
        self.version = version
        self.flags = flags
        self.deleter = CountingDeleter()
        self.exports = []

    def describe_device(self):
        return self.device

    def export(self, *, stream=None, max_version=None, requested_device=None, copy=None):
        self.exports.append(
            dict(
                stream=stream,
                max_version=max_version,
                requested_device=requested_device,
                copy=copy,
            )
        )
        device = self.device if requested_device is None else requested_device
        flags = self.flags
        if requested_device is not None or copy:
            flags |= TensorFlags.IS_COPIED
        descriptor = TensorDescriptor(
            0x10000, device, DataType(DLDataTypeCode.kDLFloat, 32), (2, 2)
        )
        managed = ManagedTensor(descriptor, "ctx", self.deleter, self.version, flags)
        return ExchangeHandle(managed)


def test_zero_copy_identity():
    a = np.arange(12, dtype=np.float32).reshape(3, 4)
    array = from_dlpack(HostProducer(a))
    assert isinstance(array, NDArray)
    assert array.data == a.ctypes.data
    assert array.shape == a.shape
    assert array.dtype == DataType.from_numpy(a.dtype)
    assert array.device == Device.cpu()
    assert array.version == PROTOCOL_VERSION
    assert not array.is_copied


def test_zero_copy_numpy_source():
    a = np.arange(12, dtype=np.float64).reshape(4, 3)[::2]
    array = from_dlpack(a)
    assert array.data == a.ctypes.data
    assert array.shape == (2, 3)
    assert array.strides == (6, 1)
    assert np.shares_memory(array.numpy(), a)
    np.testing.assert_array_equal(array.numpy(), a)


def test_forced_copy():
    a = np.arange(6, dtype=np.int32)
    array = from_dlpack(HostProducer(a), copy=True)
    assert array.is_copied
    assert array.data != a.ctypes.data
    np.testing.assert_array_equal(array.numpy(), a)


def test_forbidden_copy_tears_down():
    producer = FakeProducer(device=Device.cpu(), flags=TensorFlags.IS_COPIED)
    with pytest.raises(CopyPolicyError):
        from_dlpack(producer, copy=False)
    assert producer.deleter.calls == 1


def test_forbidden_copy_producer_failure():
    base = np.arange(20, dtype=np.uint8)
    misaligned = np.ndarray(shape=(3,), dtype=np.int16, buffer=base, strides=(3,))
    with pytest.raises(CopyPolicyError):
        from_dlpack(HostProducer(misaligned), copy=False)
    array = from_dlpack(HostProducer(misaligned))
    assert array.is_copied
    np.testing.assert_array_equal(array.numpy(), misaligned)


def test_forced_copy_not_honored():
    producer = FakeProducer(device=Device.cpu())
    producer.export = lambda **kwargs: FakeProducer.export(producer, **{**kwargs, "copy": None})
    with pytest.raises(CopyPolicyError):
        from_dlpack(producer, copy=True)
    assert producer.deleter.calls == 1


def test_unsupported_device():
    producer = FakeProducer()
    with pytest.raises(UnsupportedDeviceError):
        from_dlpack(producer)
    assert producer.exports == []


def test_unsupported_device_copy_to_cpu():
    producer = FakeProducer()
    array = from_dlpack(producer, copy=True)
    assert producer.exports[0]["requested_device"] == Device.cpu()
    assert producer.exports[0]["stream"] is None
    assert array.device == Device.cpu()
    assert array.is_copied
    del array
    assert producer.deleter.calls == 1


def test_stream_passed_to_producer():
    config = ImportConfig(
        supported_devices=frozenset({DLDeviceType.kDLCUDA}),
        stream_provider=lambda device: 42 + device.device_id,
    )
    producer = FakeProducer()
    array = Importer(config).from_dlpack(producer)
    assert producer.exports[0]["stream"] == 42
    assert producer.exports[0]["max_version"] == tuple(PROTOCOL_VERSION)
    assert producer.exports[0]["requested_device"] is None
    assert array.device == CUDA
    assert array.data == 0x10000
    with pytest.raises(UnsupportedDeviceError):
        array.numpy()
    array.release()
    assert producer.deleter.calls == 1


def test_requested_device():
    a = np.arange(4, dtype=np.float32)
    producer = HostProducer(a, device=CUDA_HOST)
    array = from_dlpack(producer, device=(DLDeviceType.kDLCPU, 0))
    assert array.device == Device.cpu()
    assert array.is_copied
    with pytest.raises(CopyPolicyError):
        from_dlpack(producer, device=Device.cpu(), copy=False)
    same = from_dlpack(producer, device=CUDA_HOST, copy=False)
    assert same.data == a.ctypes.data
    with pytest.raises(UnsupportedDeviceError):
        from_dlpack(producer, device=CUDA)


def test_handle_version_too_recent():
    producer = FakeProducer(device=Device.cpu(), version=(2, 0))
    with pytest.raises(VersionMismatchError):
        from_dlpack(producer)
    assert producer.deleter.calls == 1


def test_legacy_only_consumer():
    config = ImportConfig(max_version=None)
    a = np.arange(4, dtype=np.float32)
    array = Importer(config).from_dlpack(HostProducer(a))
    assert array.version is None
    assert array.data == a.ctypes.data
    with pytest.raises(VersionMismatchError):
        Importer(config).from_dlpack(HostProducer(a, allow_legacy=False))


def test_fallback_version():
    class FutureRejectingProducer(FakeProducer):
        def export(self, *, max_version=None, **kwargs):
            if max_version is not None and max_version[0] > 1:
                raise VersionMismatchError(f"unknown major: {max_version}")
            return super().export(max_version=max_version, **kwargs)

    producer = FutureRejectingProducer(device=Device.cpu())
    with pytest.raises(VersionMismatchError):
        Importer(ImportConfig(max_version=(2, 0))).from_dlpack(producer)
    config = ImportConfig(max_version=(2, 0), fallback_version=(1, 0))
    array = Importer(config).from_dlpack(producer)
    assert [e["max_version"] for e in producer.exports] == [(1, 0)]
    assert array.version == PROTOCOL_VERSION


def test_malformed_export_result():
    class BadProducer(FakeProducer):
        def export(self, **kwargs):
            return object()

    with pytest.raises(MalformedHandleError):
        from_dlpack(BadProducer(device=Device.cpu()))


def test_consumed_handle_returned():
    class StaleProducer(FakeProducer):
        def export(self, **kwargs):
            handle = super().export(**kwargs)
            self.stale = handle.consume()
            return handle

    producer = StaleProducer(device=Device.cpu())
    with pytest.raises(CapsuleStateError):
        from_dlpack(producer)
    assert producer.deleter.calls == 0
    producer.stale.release()
    assert producer.deleter.calls == 1


def test_not_a_producer():
    with pytest.raises(TypeError):
        from_dlpack([1, 2, 3])


def test_old_foreign_producer():
    class OldProducer:
        def __init__(self, array):
            self.array = array
            self.calls = []

        def __dlpack_device__(self):
            return (1, 0)

        def __dlpack__(self, stream=None):
            self.calls.append(stream)
            return self.array.__dlpack__()

    a = np.arange(5, dtype=np.uint8)
    source = OldProducer(a)
    array = from_dlpack(source)
    assert source.calls == [None]
    assert array.version is None
    assert array.data == a.ctypes.data
    with pytest.raises(TypeError):
        from_dlpack(source, copy=True)


def test_foreign_unknown_device():
    class AlienProducer:
        def __dlpack_device__(self):
            return (99, 0)

        def __dlpack__(self, **kwargs):
            raise AssertionError("not exported")

    with pytest.raises(UnsupportedDeviceError):
        from_dlpack(AlienProducer())


def test_reexport_ndarray():
    a = np.arange(6, dtype=np.float32)
    first = from_dlpack(a)
    second = from_dlpack(first)
    assert second.data == a.ctypes.data
    del first
    np.testing.assert_array_equal(second.numpy(), a)


def test_env_config(monkeypatch):
    monkeypatch.setenv("DLHANDOFF_MAX_VERSION", "legacy")
    array = from_dlpack(HostProducer(np.arange(3)))
    assert array.version is None


def test_managed_memory_with_stream_provider():
    a = np.arange(4, dtype=np.float32)
    config = ImportConfig(stream_provider=lambda device: 7)
    producer = HostProducer(a, device=Device(DLDeviceType.kDLCUDAManaged, 0))
    array = Importer(config).from_dlpack(producer)
    assert array.device == Device(DLDeviceType.kDLCUDAManaged, 0)
    assert array.data == a.ctypes.data
    np.testing.assert_array_equal(array.numpy(), a)


def test_requested_cpu_device_id():
    a = np.arange(4, dtype=np.float32)
    array = from_dlpack(HostProducer(a), device=(DLDeviceType.kDLCPU, 1))
    assert array.device == Device(DLDeviceType.kDLCPU, 1)
    assert array.is_copied
    np.testing.assert_array_equal(array.numpy(), a)
