import pytest

from app.jobs.addressing import (
    canonical_fix_ids,
    content_address,
    content_address_stream,
    dedup_key,
    request_address,
)


def test_content_address_is_stable_and_chunking_independent():
    data = b"room-photo-bytes" * 1000
    assert content_address(data) == content_address(data)
    assert content_address_stream([data[:7], data[7:5000], data[5000:]]) == content_address(data)
    assert content_address(data) != content_address(data + b"!")


def test_request_address_ignores_fix_order_and_duplicates():
    content_id = content_address(b"media")
    a = request_address(content_id, ["p3", "p1"])
    b = request_address(content_id, ["p1", "p3", "p1", " p3 "])
    assert a == b
    assert canonical_fix_ids(["p3", "p1", "p1", ""]) == ["p1", "p3"]


def test_request_address_depends_on_content_and_fix_set():
    c1, c2 = content_address(b"one"), content_address(b"two")
    assert request_address(c1, ["p1"]) != request_address(c2, ["p1"])
    assert request_address(c1, ["p1"]) != request_address(c1, ["p1", "p2"])


def test_domains_never_collide():
    # A content hash can never equal a request hash built from the same bytes.
    content_id = content_address(b"x")
    assert request_address(content_id, ["p1"]) != content_address(content_id.encode() + b"\x00p1")


def test_request_address_requires_fix_ids():
    with pytest.raises(ValueError):
        request_address(content_address(b"x"), [])
    with pytest.raises(ValueError):
        request_address("", ["p1"])


def test_fix_ids_with_separators_do_not_collide():
    content_id = content_address(b"media")
    assert request_address(content_id, ["p1", "p3"]) != request_address(content_id, ["p1,p3"])
    assert request_address(content_id, ["a", "b"]) != request_address(content_id, ['a","b'])


def test_dedup_key_binds_job_kind():
    content_id = content_address(b"same-bytes")
    image_key = dedup_key("image_analysis", content_id)
    assert image_key == dedup_key("image_analysis", content_id)
    assert image_key != dedup_key("video_analysis", content_id)
    with pytest.raises(ValueError):
        dedup_key("", content_id)
