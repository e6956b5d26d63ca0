"""
Unit Tests for tokens and the OTP login flow
"""
from datetime import timedelta

import jwt
import pytest

import config
from auth import check_otp, create_token, decode_token, generate_otp, hash_otp
from errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    ValidationError,
)
from schemas import SendOtpRequest, VerifyOtpRequest


class TestTokens:

    async def test_round_trip(self, alice):
        payload = decode_token(create_token(alice))

        assert payload['userId'] == alice.id
        assert payload['email'] == alice.email
        assert payload['role'] == 'user'
        assert payload['iss'] == 'fix-my-area'
        assert payload['aud'] == 'fix-my-area-users'
        assert payload['exp'] - payload['iat'] == 7 * 24 * 60 * 60

    async def test_expired_token(self, alice, clock):
        token = create_token(alice, clock() - timedelta(days=8))
        with pytest.raises(AuthenticationError):
            decode_token(token)

    def test_wrong_audience(self):
        token = jwt.encode(
            {'userId': 'x', 'iss': config.JWT_ISSUER, 'aud': 'someone-else'},
            config.JWT_SECRET,
            algorithm='HS256',
        )
        with pytest.raises(AuthenticationError):
            decode_token(token)

    def test_wrong_secret(self):
        token = jwt.encode(
            {'userId': 'x', 'iss': config.JWT_ISSUER, 'aud': config.JWT_AUDIENCE},
            'not-the-secret-used-by-the-api',
            algorithm='HS256',
        )
        with pytest.raises(AuthenticationError):
            decode_token(token)


class TestOtpHelpers:

    def test_generate_otp_is_six_digits(self):
        for _ in range(20):
            otp = generate_otp()
            assert len(otp) == 6
            assert otp.isdigit()
            assert otp[0] != '0'

    def test_hash_and_check(self):
        otp_hash = hash_otp('123456')
        assert otp_hash != '123456'
        assert check_otp('123456', otp_hash) is True
        assert check_otp('654321', otp_hash) is False

    def test_check_against_garbage_hash(self):
        assert check_otp('123456', 'not-a-bcrypt-hash') is False


class TestSignupFlow:

    async def test_signup_then_verify(self, services, notifier):
        sent = await services.auth.send_otp(
            SendOtpRequest(email='Chidi@FixMyArea.org', name='  Chidi Eze ', isSignup=True)
        )
        assert sent == {'email': 'chidi@fixmyarea.org', 'expiresIn': 600000}
        pending = await services.users.find_by_email('chidi@fixmyarea.org')
        assert pending.isVerified is False
        assert pending.name == 'Chidi Eze'

        otp = notifier.otps['chidi@fixmyarea.org']
        user, token, created = await services.auth.verify_otp(VerifyOtpRequest(email='chidi@fixmyarea.org', otp=otp))

        assert created is True
        assert user.isVerified is True
        assert decode_token(token)['userId'] == user.id
        assert notifier.welcomed == ['chidi@fixmyarea.org']
        assert await services.users.get_otp(user.id) is None

    async def test_signup_needs_a_name(self, services):
        with pytest.raises(ValidationError):
            await services.auth.send_otp(SendOtpRequest(email='chidi@fixmyarea.org', name=' C ', isSignup=True))

    async def test_signup_with_existing_verified_email(self, services, alice):
        with pytest.raises(ConflictError) as exc_info:
            await services.auth.send_otp(SendOtpRequest(email=alice.email, name='Alice Again', isSignup=True))
        assert exc_info.value.message == 'User with this email already exists'


class TestLoginFlow:

    async def test_login_with_otp(self, services, notifier, alice):
        await services.auth.send_otp(SendOtpRequest(email=alice.email))
        otp = notifier.otps[alice.email]

        user, token, created = await services.auth.verify_otp(VerifyOtpRequest(email=alice.email, otp=otp))

        assert created is False
        assert user.id == alice.id
        assert notifier.welcomed == []

    async def test_unknown_email(self, services):
        with pytest.raises(NotFoundError) as exc_info:
            await services.auth.send_otp(SendOtpRequest(email='nobody@fixmyarea.org'))
        assert exc_info.value.message == 'No account found with this email address'

    async def test_unverified_account(self, services):
        await services.users.create('late@fixmyarea.org', 'Late Comer')
        with pytest.raises(PermissionDeniedError):
            await services.auth.send_otp(SendOtpRequest(email='late@fixmyarea.org'))

    async def test_rate_limited_after_five_requests(self, services, alice):
        for _ in range(5):
            await services.auth.send_otp(SendOtpRequest(email=alice.email))

        with pytest.raises(RateLimitedError):
            await services.auth.send_otp(SendOtpRequest(email=alice.email))

    async def test_wrong_otp(self, services, notifier, alice):
        await services.auth.send_otp(SendOtpRequest(email=alice.email))
        wrong = '111111' if notifier.otps[alice.email] != '111111' else '222222'

        with pytest.raises(ValidationError) as exc_info:
            await services.auth.verify_otp(VerifyOtpRequest(email=alice.email, otp=wrong))
        assert exc_info.value.message == 'Invalid OTP'

    async def test_expired_otp_is_cleared(self, services, notifier, clock, alice):
        await services.auth.send_otp(SendOtpRequest(email=alice.email))
        clock.advance(minutes=11)

        with pytest.raises(ValidationError) as exc_info:
            await services.auth.verify_otp(VerifyOtpRequest(email=alice.email, otp=notifier.otps[alice.email]))

        assert exc_info.value.message == 'OTP has expired. Please request a new one.'
        assert await services.users.get_otp(alice.id) is None

    async def test_verify_without_pending_otp(self, services, alice):
        with pytest.raises(ValidationError) as exc_info:
            await services.auth.verify_otp(VerifyOtpRequest(email=alice.email, otp='123456'))
        assert exc_info.value.message == 'No OTP found. Please request a new one.'


class TestAdminAccounts:

    async def test_create_admin(self, services):
        admin = await services.users.create_admin('Ops@FixMyArea.org', 'Ops Desk')

        assert admin.role == 'admin'
        assert admin.isVerified is True
        assert admin.email == 'ops@fixmyarea.org'

    async def test_create_admin_with_taken_email(self, services, alice):
        with pytest.raises(ConflictError) as exc_info:
            await services.users.create_admin(alice.email, 'Alice Admin')
        assert exc_info.value.message == 'User with this email already exists'

    async def test_bootstrap_admin_is_created_once(self, services):
        first = await services.ensure_admin('ops@fixmyarea.org', 'Ops Desk')
        second = await services.ensure_admin('ops@fixmyarea.org', 'Ops Desk')

        assert first.id == second.id
        assert await services.users.count(role='admin') == 1

    async def test_bootstrap_admin_can_log_in(self, services, notifier):
        await services.ensure_admin('ops@fixmyarea.org', 'Ops Desk')

        await services.auth.send_otp(SendOtpRequest(email='ops@fixmyarea.org'))
        user, token, created = await services.auth.verify_otp(
            VerifyOtpRequest(email='ops@fixmyarea.org', otp=notifier.otps['ops@fixmyarea.org'])
        )

        assert user.role == 'admin'
        assert decode_token(token)['role'] == 'admin'

    async def test_bootstrap_leaves_existing_user_alone(self, services, alice):
        kept = await services.ensure_admin(alice.email, 'Alice Admin')

        assert kept.id == alice.id
        assert kept.role == 'user'

    async def test_no_email_configured(self, services):
        assert await services.ensure_admin(None, 'Administrator') is None
