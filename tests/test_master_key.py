"""Tests for master key storage: native keyring, file fallback and selection."""

import asyncio
import base64
import stat
import sys

import pytest
from keyring.backends import fail

from diabetesm.storage import (
    FileSecretStore,
    InMemorySecretStore,
    KeyringManager,
    NativeSecretStore,
)
from diabetesm.types import DecryptionFailedError, SecretStoreError

from fakes import TEST_MASTER_KEY, MemoryKeyring


def fixed_machine_key() -> bytes:
    return b"\x42" * 32


class TestNativeSecretStore:
    """Test the keyring-backed store."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self) -> None:
        backend = MemoryKeyring()
        store = NativeSecretStore(backend=backend)

        assert await store.get() is None
        await store.set(TEST_MASTER_KEY)
        assert ("diabetes-m-mcp", "master-key") in backend.passwords
        assert await store.get() == TEST_MASTER_KEY

        assert await store.delete() is True
        assert await store.delete() is False
        assert await store.get() is None

    @pytest.mark.asyncio
    async def test_availability(self) -> None:
        assert await NativeSecretStore(backend=MemoryKeyring()).is_available()
        assert not await NativeSecretStore(backend=fail.Keyring()).is_available()

    @pytest.mark.asyncio
    async def test_backend_errors_are_wrapped(self) -> None:
        store = NativeSecretStore(backend=MemoryKeyring(broken=True))
        with pytest.raises(SecretStoreError):
            await store.get()
        with pytest.raises(SecretStoreError):
            await store.set(TEST_MASTER_KEY)

    @pytest.mark.asyncio
    async def test_non_base64_entry(self) -> None:
        backend = MemoryKeyring()
        backend.passwords[("diabetes-m-mcp", "master-key")] = "***"
        with pytest.raises(SecretStoreError):
            await NativeSecretStore(backend=backend).get()


class TestFileSecretStore:
    """Test the machine-bound fallback file."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path) -> None:
        store = FileSecretStore(tmp_path, key_deriver=fixed_machine_key)

        assert await store.get() is None
        await store.set(TEST_MASTER_KEY)

        assert len(store.path.read_bytes()) == 16 + 16 + 32
        assert await store.get() == TEST_MASTER_KEY

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    @pytest.mark.asyncio
    async def test_file_is_owner_only(self, tmp_path) -> None:
        store = FileSecretStore(tmp_path / "cfg", key_deriver=fixed_machine_key)
        await store.set(TEST_MASTER_KEY)
        assert stat.S_IMODE(store.path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_other_machine_cannot_read(self, tmp_path) -> None:
        await FileSecretStore(tmp_path, key_deriver=fixed_machine_key).set(TEST_MASTER_KEY)
        other = FileSecretStore(tmp_path, key_deriver=lambda: b"\x07" * 32)

        with pytest.raises(DecryptionFailedError):
            await other.get()

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path) -> None:
        store = FileSecretStore(tmp_path, key_deriver=fixed_machine_key)
        assert await store.delete() is False
        await store.set(TEST_MASTER_KEY)
        assert await store.delete() is True
        assert not store.path.exists()


class TestKeyringManager:
    """Test master key selection between stores."""

    @pytest.mark.asyncio
    async def test_native_key_is_used(self, encryption) -> None:
        native = InMemorySecretStore(TEST_MASTER_KEY)
        fallback = InMemorySecretStore()
        manager = KeyringManager(native, fallback, encryption)

        assert await manager.get_master_key() == TEST_MASTER_KEY
        assert await manager.storage_location() == "memory"
        assert await fallback.get() is None

    @pytest.mark.asyncio
    async def test_generates_once(self, encryption) -> None:
        native = InMemorySecretStore()
        manager = KeyringManager(native, InMemorySecretStore(), encryption)

        first = await manager.get_master_key()
        assert len(first) == 32
        assert await manager.get_master_key() == first

    @pytest.mark.asyncio
    async def test_unavailable_native_uses_fallback(self, tmp_path, encryption) -> None:
        fallback = FileSecretStore(tmp_path, key_deriver=fixed_machine_key)
        manager = KeyringManager(InMemorySecretStore(available=False), fallback, encryption)

        key = await manager.get_master_key()
        assert await manager.is_available() is False
        assert await manager.storage_location() == "file"
        assert await fallback.get() == key

    @pytest.mark.asyncio
    async def test_failing_native_uses_fallback(self, tmp_path, encryption) -> None:
        native = NativeSecretStore(backend=MemoryKeyring(broken=True))
        fallback = FileSecretStore(tmp_path, key_deriver=fixed_machine_key)
        manager = KeyringManager(native, fallback, encryption)

        key = await manager.get_master_key()
        assert fallback.path.exists()
        assert await manager.get_master_key() == key

    @pytest.mark.asyncio
    async def test_no_native_store(self, encryption) -> None:
        manager = KeyringManager(None, InMemorySecretStore(TEST_MASTER_KEY), encryption)
        assert await manager.is_available() is False
        assert await manager.get_master_key() == TEST_MASTER_KEY

    @pytest.mark.asyncio
    async def test_availability_probed_once(self, encryption) -> None:
        class CountingStore(InMemorySecretStore):
            probes = 0

            async def is_available(self) -> bool:
                CountingStore.probes += 1
                return True

        manager = KeyringManager(CountingStore(TEST_MASTER_KEY), InMemorySecretStore(), encryption)
        for _ in range(3):
            await manager.get_master_key()
        assert CountingStore.probes == 1

    @pytest.mark.asyncio
    async def test_corrupt_fallback_is_not_overwritten(self, tmp_path, encryption) -> None:
        """An unreadable key file surfaces as an error and stays on disk."""
        fallback = FileSecretStore(tmp_path, key_deriver=fixed_machine_key)
        fallback.path.write_bytes(b"\x00" * 64)
        manager = KeyringManager(InMemorySecretStore(available=False), fallback, encryption)

        with pytest.raises(DecryptionFailedError):
            await manager.get_master_key()
        assert fallback.path.read_bytes() == b"\x00" * 64

    @pytest.mark.asyncio
    async def test_delete_master_key(self, tmp_path, encryption) -> None:
        native = InMemorySecretStore(TEST_MASTER_KEY)
        fallback = FileSecretStore(tmp_path, key_deriver=fixed_machine_key)
        await fallback.set(TEST_MASTER_KEY)
        manager = KeyringManager(native, fallback, encryption)

        assert await manager.delete_master_key() is True
        assert await native.get() is None
        assert not fallback.path.exists()
        assert await manager.delete_master_key() is False


class FlakyStore(InMemorySecretStore):
    """Keyring stand-in whose first read fails."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 1

    async def get(self):
        if self.failures:
            self.failures -= 1
            raise SecretStoreError("transient")
        return await super().get()


class TestMasterKeyLifetime:
    """Test that one master key is used per manager."""

    @pytest.mark.asyncio
    async def test_fallback_sticks_after_keyring_recovers(self, tmp_path, encryption) -> None:
        native = FlakyStore()
        fallback = FileSecretStore(tmp_path, key_deriver=fixed_machine_key)
        manager = KeyringManager(native, fallback, encryption)

        first = await manager.get_master_key()
        second = await manager.get_master_key()

        assert first == second
        assert await fallback.get() == first
        assert await native.get() is None
        assert await manager.storage_location() == "file"

    @pytest.mark.asyncio
    async def test_concurrent_callers_get_one_key(self, encryption) -> None:
        native = InMemorySecretStore()
        manager = KeyringManager(native, InMemorySecretStore(), encryption)

        keys = await asyncio.gather(*(manager.get_master_key() for _ in range(5)))

        assert len(set(keys)) == 1
        assert await native.get() == keys[0]

    @pytest.mark.asyncio
    async def test_resolved_once(self, encryption) -> None:
        native = InMemorySecretStore(TEST_MASTER_KEY)
        manager = KeyringManager(native, InMemorySecretStore(), encryption)

        for _ in range(3):
            await manager.get_master_key()
        assert native.get_calls == 1

    @pytest.mark.asyncio
    async def test_delete_starts_over(self, encryption) -> None:
        manager = KeyringManager(InMemorySecretStore(), InMemorySecretStore(), encryption)

        first = await manager.get_master_key()
        await manager.delete_master_key()

        assert await manager.get_master_key() != first


class TestKeyringEntryValidation:
    """Test handling of unusable keyring entries."""

    @pytest.mark.asyncio
    async def test_empty_entry_is_absent(self, encryption) -> None:
        backend = MemoryKeyring()
        backend.passwords[("diabetes-m-mcp", "master-key")] = ""
        native = NativeSecretStore(backend=backend)

        assert await native.get() is None

        key = await KeyringManager(native, InMemorySecretStore(), encryption).get_master_key()
        assert len(key) == 32
        assert backend.passwords[("diabetes-m-mcp", "master-key")] == base64.b64encode(key).decode()

    @pytest.mark.asyncio
    async def test_wrong_length_entry_falls_back(self, encryption) -> None:
        backend = MemoryKeyring()
        backend.passwords[("diabetes-m-mcp", "master-key")] = base64.b64encode(bytes(16)).decode()
        native = NativeSecretStore(backend=backend)
        fallback = InMemorySecretStore()

        with pytest.raises(SecretStoreError):
            await native.get()

        key = await KeyringManager(native, fallback, encryption).get_master_key()
        assert len(key) == 32
        assert await fallback.get() == key
