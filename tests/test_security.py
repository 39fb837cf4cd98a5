import pytest

from app.core.exceptions import BadRequestException, ForbiddenException
from app.jobs.models import JobKind
from app.jobs.security import validate_media_key


def test_own_uploads_are_accepted_and_normalized():
    assert validate_media_key("u1", " uploads/u1/room.JPG ", JobKind.IMAGE_ANALYSIS) == "uploads/u1/room.JPG"
    assert validate_media_key("u1", "uploads/users/u1/tour.mp4", JobKind.VIDEO_ANALYSIS) == "uploads/users/u1/tour.mp4"


@pytest.mark.parametrize(
    "key",
    ["", "   ", "https://bucket.s3.amazonaws.com/uploads/u1/a.jpg", "/uploads/u1/a.jpg", "uploads/u1/../u2/a.jpg"],
)
def test_malformed_keys_are_rejected(key):
    with pytest.raises(BadRequestException):
        validate_media_key("u1", key, JobKind.IMAGE_ANALYSIS)


def test_other_users_uploads_are_forbidden():
    with pytest.raises(ForbiddenException):
        validate_media_key("u1", "uploads/u2/room.jpg", JobKind.IMAGE_ANALYSIS)
    with pytest.raises(ForbiddenException):
        # Prefix of another user id.
        validate_media_key("u1", "uploads/u10/room.jpg", JobKind.IMAGE_ANALYSIS)
    with pytest.raises(ForbiddenException):
        validate_media_key("u1", "uploads/u1/", JobKind.IMAGE_ANALYSIS)


def test_media_type_must_match_job_kind():
    with pytest.raises(BadRequestException):
        validate_media_key("u1", "uploads/u1/tour.mp4", JobKind.IMAGE_ANALYSIS)
    with pytest.raises(BadRequestException):
        validate_media_key("u1", "uploads/u1/room.jpg", JobKind.VIDEO_ANALYSIS)
    with pytest.raises(BadRequestException):
        validate_media_key("u1", "uploads/u1/room", JobKind.IMAGE_ANALYSIS)


def test_overlong_keys_are_rejected():
    with pytest.raises(BadRequestException):
        validate_media_key("u1", "uploads/u1/" + "a" * 600 + ".jpg", JobKind.IMAGE_ANALYSIS)
