from capsule_chat.uploads import purge_uploads, safe_filename, store_upload


def test_safe_filename_strips_paths_and_odd_characters():
    assert safe_filename("../../etc/passwd") == "passwd"
    assert safe_filename("my photo (1).png") == "my_photo_1_.png"
    assert safe_filename("") == "upload"


def test_store_upload_keeps_same_named_files_apart(tmp_path):
    first = store_upload(tmp_path / "uploads", "clip.mp4", b"one")
    second = store_upload(tmp_path / "uploads", "clip.mp4", b"two")

    assert first != second
    assert first.name.endswith("-clip.mp4")
    assert first.read_bytes() == b"one"
    assert second.read_bytes() == b"two"


def test_purge_removes_every_file_and_counts_them(tmp_path):
    uploads = tmp_path / "uploads"
    for name in ("a.png", "b.mp4", "c.jpg"):
        store_upload(uploads, name, b"x")
    (uploads / "keep-dir").mkdir()

    assert purge_uploads(uploads) == 3
    assert [p.name for p in uploads.iterdir()] == ["keep-dir"]


def test_purge_missing_directory_is_a_no_op(tmp_path):
    assert purge_uploads(tmp_path / "absent") == 0
