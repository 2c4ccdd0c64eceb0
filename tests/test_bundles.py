import io
import re
import zipfile

import pytest

from papercheck.errors import BundleTooLarge, EmptyBundle, PersistFailed, UnsupportedFormat
from papercheck.services import bundles
from papercheck.services.bundles import BundlePackager, build_bundle, unpack_bundle
from papercheck.services.rasterizer import RasterPage, rasterize_bytes

from conftest import FILES_BASE, FakeStore, make_image, make_pdf, run


def _pages(n):
    return [RasterPage(index=i, data=f"jpeg-{i}".encode(), width=10, height=10) for i in range(n)]


def test_bundle_keeps_page_order_with_sortable_names():
    archive = build_bundle(_pages(12))
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        names = zf.namelist()
    assert names == sorted(names)
    assert names[0] == "page_001.jpg" and names[-1] == "page_012.jpg"

    unpacked = unpack_bundle(archive)
    assert [data for _, data in unpacked] == [f"jpeg-{i}".encode() for i in range(12)]


def test_bundle_names_follow_position_when_pages_were_skipped():
    pages = [RasterPage(index=0, data=b"a", width=1, height=1), RasterPage(index=2, data=b"c", width=1, height=1)]
    assert [name for name, _ in unpack_bundle(build_bundle(pages))] == ["page_001.jpg", "page_002.jpg"]


def test_empty_bundle_is_rejected():
    with pytest.raises(EmptyBundle):
        build_bundle([])


def test_unpack_rejects_non_zip_and_imageless_archives():
    with pytest.raises(UnsupportedFormat):
        unpack_bundle(b"not a zip")

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("notes.txt", "hello")
    with pytest.raises(EmptyBundle):
        unpack_bundle(buf.getvalue())


def test_package_and_store_uploads_under_category_and_identifier():
    store = FakeStore()
    packager = BundlePackager(store, base_delay=0)

    url = run(packager.package_and_store(_pages(2), "stu1", "answer_sheets"))

    (name,) = store.files
    assert re.fullmatch(r"answer_sheets_zip/answer_sheets_stu1_[0-9a-f-]{36}\.zip", name)
    assert url == f"{FILES_BASE}/{name}"
    assert store.files[name][1] == "application/zip"


def test_concurrent_packagings_of_one_document_do_not_collide():
    store = FakeStore()
    packager = BundlePackager(store, base_delay=0)
    first = run(packager.package_and_store(_pages(1), "doc", "question_papers"))
    second = run(packager.package_and_store(_pages(1), "doc", "question_papers"))
    assert first != second
    assert len(store.files) == 2


def test_upload_is_retried_on_transient_store_errors():
    store = FakeStore(fail_times=2)
    url = run(BundlePackager(store, base_delay=0).package_and_store(_pages(1), "stu1"))
    assert store.upload_calls == 3
    assert url.startswith(FILES_BASE)


def test_upload_gives_up_after_three_attempts():
    store = FakeStore(fail_times=5)
    with pytest.raises(PersistFailed):
        run(BundlePackager(store, base_delay=0).package_and_store(_pages(1), "stu1"))
    assert store.upload_calls == 3
    assert store.files == {}


def test_oversized_bundle_is_rejected_before_upload(monkeypatch):
    monkeypatch.setattr(bundles, "MAX_BUNDLE_BYTES", 64)
    store = FakeStore()
    with pytest.raises(BundleTooLarge):
        run(BundlePackager(store).package_and_store(_pages(3), "stu1"))
    assert store.upload_calls == 0


def test_bundle_document_rasterizes_then_stores():
    store = FakeStore()
    url = run(BundlePackager(store, base_delay=0).bundle_document(make_pdf(6), "stu1", kind="pdf"))

    name = url[len(FILES_BASE) + 1:]
    images = unpack_bundle(store.files[name][0])
    assert len(images) == 4


def test_bundled_pages_match_direct_rasterization():
    png = make_image(1600, 1200)
    store = FakeStore()
    url = run(BundlePackager(store).bundle_document(png, "img"))
    (_, data), = unpack_bundle(store.files[url[len(FILES_BASE) + 1:]][0])
    assert data == rasterize_bytes(png)[0].data
