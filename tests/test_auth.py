import pytest

from auth import (
    Identity,
    Role,
    _serializer,
    identity_from_token,
    issue_token,
    require_admin,
    require_writer,
)
from errors import AuthenticationError, PermissionDeniedError


def test_token_round_trip_keeps_user_and_role():
    identity = identity_from_token(issue_token("family-1", Role.admin))
    assert identity == Identity(user_id="family-1", role=Role.admin)
    assert identity.is_admin
    assert identity.can_write


def test_tampered_token_is_rejected():
    token = issue_token("family-1")
    with pytest.raises(AuthenticationError):
        identity_from_token(token[:-2] + ("aa" if not token.endswith("aa") else "bb"))
    with pytest.raises(AuthenticationError):
        identity_from_token("")


def test_unknown_role_is_rejected():
    token = _serializer().dumps({"u": "family-1", "r": "owner"})
    with pytest.raises(AuthenticationError, match="role"):
        identity_from_token(token)


def test_role_checks():
    viewer = Identity(user_id="v", role=Role.viewer)
    editor = Identity(user_id="e")
    with pytest.raises(PermissionDeniedError):
        require_writer(viewer)
    with pytest.raises(PermissionDeniedError):
        require_admin(editor)
    require_writer(editor)
