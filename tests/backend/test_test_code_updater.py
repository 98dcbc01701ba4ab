"""Unit tests for writing patched tests back to disk."""

import os
import time

import pytest

from src.api_healer.core.models import HealingStrategy, PatchedTest
from src.api_healer.services.test_code_updater import PatchedTestWriter


ORIGINAL = "test('a', () => { expect(body.product_name).toBe('x'); });\n"
PATCHED = "test('a', () => { expect(body.productName).toBe('x'); });\n"


class TestPatchedTestWriter:
    """Test cases for PatchedTestWriter."""

    @pytest.fixture
    def writer(self, tmp_path):
        return PatchedTestWriter(backup_dir=str(tmp_path / "backups"))

    @pytest.fixture
    def test_file(self, tmp_path):
        path = tmp_path / "products.spec.ts"
        path.write_text(ORIGINAL, encoding="utf-8")
        return path

    def _patched(self, path):
        return PatchedTest(test_path=str(path), original_code=ORIGINAL, patched_code=PATCHED,
                           strategy=HealingStrategy.RULE_BASED,
                           rules_applied=["field_rename:product_name->productName"])

    def test_write_with_backup(self, writer, test_file):
        result = writer.write_patched_test(self._patched(test_file))

        assert result.success
        assert test_file.read_text(encoding="utf-8") == PATCHED
        with open(result.backup_path, encoding="utf-8") as f:
            assert f.read() == ORIGINAL
        assert not os.path.exists(f"{test_file}.tmp")

    def test_write_without_backup(self, writer, test_file):
        result = writer.write_patched_test(self._patched(test_file), create_backup=False)

        assert result.success
        assert result.backup_path is None

    def test_missing_file(self, writer, tmp_path):
        result = writer.write_patched_test(self._patched(tmp_path / "gone.spec.ts"))

        assert not result.success
        assert "File not found" in result.error_message

    def test_file_changed_since_healing(self, writer, test_file):
        test_file.write_text("test('edited', () => {});\n", encoding="utf-8")

        result = writer.write_patched_test(self._patched(test_file))

        assert not result.success
        assert result.error_message == "Test file changed since it was healed"
        assert test_file.read_text(encoding="utf-8") == "test('edited', () => {});\n"

    def test_restore_from_backup(self, writer, test_file):
        result = writer.write_patched_test(self._patched(test_file))

        assert writer.restore_from_backup(str(test_file), result.backup_path)
        assert test_file.read_text(encoding="utf-8") == ORIGINAL
        assert not writer.restore_from_backup(str(test_file), "/nonexistent/backup.ts")

    def test_backup_info_and_cleanup(self, writer, test_file):
        backup = writer.backup_test_file(str(test_file))

        info = writer.get_backup_info(str(test_file))
        assert [b["path"] for b in info] == [backup]

        old = time.time() - 10 * 24 * 3600
        os.utime(backup, (old, old))
        assert writer.cleanup_old_backups(retention_days=7) == 1
        assert writer.get_backup_info(str(test_file)) == []

    def test_backup_missing_file(self, writer, tmp_path):
        with pytest.raises(FileNotFoundError):
            writer.backup_test_file(str(tmp_path / "gone.spec.ts"))
