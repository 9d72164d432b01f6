"""
Tests for the two-factor manager: TOTP window, replay protection and
single-use backup codes.
"""
import pytest

from models.two_factor import TwoFactorCredential
from security import two_factor
from security.errors import IntegrityViolation, ValidationError
from security.two_factor import totp_code_at

# aligned to the start of a 30s step
T0 = 1_700_000_010.0
STEP = 30


@pytest.fixture
def enrolled(user):
    """User with 2FA set up and enabled at T0. Returns (user, setup)."""
    result = two_factor.setup(user.id, user.email)
    assert two_factor.enable(user.id, totp_code_at(result.secret, T0), now=T0)
    return user, result


class TestSetup:

    def test_setup_returns_material_once(self, user):
        result = two_factor.setup(user.id, user.email)

        assert len(result.backup_codes) == 8
        assert result.qr_payload.startswith("otpauth://totp/")
        assert result.qr_code_data_uri.startswith("data:image/png;base64,")
        assert result.manual_entry_key.replace(" ", "") == result.secret

        credential = TwoFactorCredential.query.filter_by(user_id=user.id).one()
        assert credential.enabled is False
        assert result.secret not in credential.secret_ciphertext
        assert len(credential.backup_code_hashes) == 8

    def test_setup_replaces_previous_credential(self, user):
        first = two_factor.setup(user.id, user.email)
        second = two_factor.setup(user.id, user.email)

        assert first.secret != second.secret
        assert TwoFactorCredential.query.filter_by(user_id=user.id).count() == 1


class TestEnable:

    def test_enable_with_valid_code(self, enrolled):
        user, _ = enrolled
        status = two_factor.status(user.id)
        assert status["enabled"] is True
        assert status["verified_at"] is not None
        assert status["backup_codes_remaining"] == 8

    def test_enable_with_wrong_code(self, user):
        result = two_factor.setup(user.id, user.email)
        wrong = "000000" if totp_code_at(result.secret, T0) != "000000" else "111111"
        assert two_factor.enable(user.id, wrong, now=T0) is False
        assert two_factor.is_enabled(user.id) is False

    def test_enable_without_setup(self, user):
        assert two_factor.enable(user.id, "123456", now=T0) is False


class TestTotpWindow:

    def test_previous_step_accepted(self, enrolled):
        user, setup = enrolled
        code = totp_code_at(setup.secret, T0 + 2 * STEP)
        assert two_factor.verify_login(user.id, code, now=T0 + 3 * STEP).success

    def test_next_step_accepted(self, enrolled):
        user, setup = enrolled
        code = totp_code_at(setup.secret, T0 + 4 * STEP)
        assert two_factor.verify_login(user.id, code, now=T0 + 3 * STEP).success

    def test_two_steps_old_rejected(self, enrolled):
        user, setup = enrolled
        code = totp_code_at(setup.secret, T0 + 2 * STEP)
        now = T0 + 4 * STEP
        # guard against a coincidental match with an accepted step
        if code in {totp_code_at(setup.secret, now + k * STEP) for k in (-1, 0, 1)}:
            pytest.skip("code collision")
        assert not two_factor.verify_login(user.id, code, now=now).success


class TestReplayProtection:

    def test_same_code_twice_rejected(self, enrolled):
        user, setup = enrolled
        now = T0 + 10 * STEP
        code = totp_code_at(setup.secret, now)

        assert two_factor.verify_login(user.id, code, now=now).success
        assert not two_factor.verify_login(user.id, code, now=now).success

    def test_enable_code_cannot_be_replayed_for_login(self, enrolled):
        user, setup = enrolled
        assert not two_factor.verify_login(user.id, totp_code_at(setup.secret, T0), now=T0).success


class TestBackupCodes:

    def test_backup_code_single_use(self, enrolled):
        """Use code #3 once: it fails afterwards and 7 codes stay valid."""
        user, setup = enrolled
        third = setup.backup_codes[2]

        first = two_factor.verify_login(user.id, third)
        assert first.success
        assert first.used_backup_code
        assert first.backup_codes_remaining == 7

        again = two_factor.verify_login(user.id, third)
        assert not again.success
        assert two_factor.status(user.id)["backup_codes_remaining"] == 7

        other = two_factor.verify_login(user.id, setup.backup_codes[0].lower())
        assert other.success
        assert other.backup_codes_remaining == 6

    def test_regenerate_invalidates_old_codes(self, enrolled):
        user, setup = enrolled
        new_codes = two_factor.regenerate_backup_codes(user.id)

        assert len(new_codes) == 8
        assert not two_factor.verify_login(user.id, setup.backup_codes[0]).success
        assert two_factor.verify_login(user.id, new_codes[0]).success

    def test_regenerate_without_setup(self, user):
        with pytest.raises(IntegrityViolation):
            two_factor.regenerate_backup_codes(user.id)

    def test_disabled_credential_rejects_everything(self, enrolled):
        user, setup = enrolled
        two_factor.disable(user.id)

        assert not two_factor.is_enabled(user.id)
        assert not two_factor.verify_login(user.id, setup.backup_codes[1]).success
        assert two_factor.status(user.id)["backup_codes_remaining"] == 0


class TestCodeShape:

    @pytest.mark.parametrize("raw,expected", [
        ("123456", "123456"),
        (" 123 456 ", "123456"),
        ("ab12-cd34", "ab12-cd34"),
    ])
    def test_accepted_shapes(self, raw, expected):
        assert two_factor.normalize_totp_code(raw) == expected

    @pytest.mark.parametrize("raw", ["12345", "1234567", "abcdef", "", 123456, None])
    def test_rejected_shapes(self, raw):
        with pytest.raises(ValidationError):
            two_factor.normalize_totp_code(raw)
