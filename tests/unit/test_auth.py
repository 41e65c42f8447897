"""
Unit tests for owner identity (crmkit/auth.py).
The CRM_USER_ID fallback is controlled by patching crmkit.auth.config.
"""

import pytest
from unittest.mock import patch

from crmkit import auth
from crmkit.auth import get_current_user, require_user, sign_in, sign_out, signed_in_as
from crmkit.errors import Unauthorized


@pytest.fixture(autouse=True)
def no_default_user():
    with patch.object(auth.config, 'CRM_USER_ID', None):
        yield


def test_nobody_signed_in_by_default():
    assert get_current_user() is None


def test_falls_back_to_configured_user():
    with patch.object(auth.config, 'CRM_USER_ID', 'u-env'):
        assert get_current_user() == 'u-env'


def test_signed_in_as_binds_for_block():
    with signed_in_as('u-1'):
        assert get_current_user() == 'u-1'
    assert get_current_user() is None


def test_nested_blocks_restore_outer_identity():
    with signed_in_as('u-1'):
        with signed_in_as('u-2'):
            assert get_current_user() == 'u-2'
        assert get_current_user() == 'u-1'


def test_signed_in_as_none_hides_configured_user():
    with patch.object(auth.config, 'CRM_USER_ID', 'u-env'):
        with signed_in_as(None):
            assert get_current_user() is None
        assert get_current_user() == 'u-env'


def test_require_user_returns_identity():
    with signed_in_as('u-1'):
        assert require_user() == 'u-1'


def test_require_user_raises_unauthorized():
    with pytest.raises(Unauthorized, match='Unauthorized'):
        require_user()


def test_sign_in_and_sign_out():
    with signed_in_as(None):
        sign_in('  u-3 ')
        assert get_current_user() == 'u-3'
        sign_out()
        assert get_current_user() is None


def test_sign_out_suppresses_configured_user():
    with patch.object(auth.config, 'CRM_USER_ID', 'u-env'):
        with signed_in_as('u-1'):
            sign_out()
            assert get_current_user() is None


@pytest.mark.parametrize('blank', ['', '   ', None])
def test_sign_in_blank_rejected(blank):
    with pytest.raises(Unauthorized):
        sign_in(blank)
