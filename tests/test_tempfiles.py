from cliprr.tempfiles import cleanup_temp_files


def test_removes_job_dirs_except_active(tmp_path):
    (tmp_path / "cliprr-job-1-abc").mkdir()
    (tmp_path / "cliprr-job-1-abc" / "101-head.wav").write_bytes(b"\x00")
    (tmp_path / "cliprr-job-2-def").mkdir()
    (tmp_path / "cliprr-job-stray.wav").write_bytes(b"\x00")

    removed = cleanup_temp_files(str(tmp_path), active_job_ids=[2])

    assert removed == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["cliprr-job-2-def"]


def test_leaves_foreign_entries(tmp_path):
    (tmp_path / "cliprr-bench-xyz").mkdir()
    (tmp_path / "keep.txt").write_text("mine")

    assert cleanup_temp_files(str(tmp_path)) == 0
    assert len(list(tmp_path.iterdir())) == 2


def test_missing_root(tmp_path):
    assert cleanup_temp_files(str(tmp_path / "absent")) == 0
