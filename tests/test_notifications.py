"""
Unit Tests for outbound email
"""
import json

import httpx

from notifications import HttpEmailNotifier, LogNotifier, otp_message, status_change_message
from schemas import StatusChangeEvent

API_URL = 'https://mail.example.com/v1/send'


def status_event(**overrides) -> StatusChangeEvent:
    data = {
        'recipientEmail': 'alice@fixmyarea.org',
        'recipientName': 'Alice <Okafor>',
        'issueTitle': 'Broken streetlight',
        'oldStatus': 'pending',
        'newStatus': 'in-progress',
        'issueId': '65f0c0ffee0000000000abcd',
    }
    data.update(overrides)
    return StatusChangeEvent(**data)


class TestMessages:

    def test_otp_message(self):
        message = otp_message('123456', 'Alice')
        assert '123456' in message['text']
        assert message['text'].startswith('Hello Alice,')
        assert '<strong>123456</strong>' in message['html']

    def test_status_message_escapes_html(self):
        message = status_change_message(status_event())

        assert 'Alice &lt;Okafor&gt;' in message['html']
        assert 'from Pending to In Progress' in message['text']
        assert '/issues/65f0c0ffee0000000000abcd' in message['text']


class TestHttpEmailNotifier:

    async def test_posts_json_to_api(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202, json={'id': 'msg_1'})

        notifier = HttpEmailNotifier(API_URL, api_key='key-123', transport=httpx.MockTransport(handler))

        assert await notifier.send_otp('alice@fixmyarea.org', '654321', 'Alice') is True

        request = seen[0]
        body = json.loads(request.content)
        assert str(request.url) == API_URL
        assert request.headers['Authorization'] == 'Bearer key-123'
        assert body['to'] == 'alice@fixmyarea.org'
        assert '654321' in body['text']

    async def test_http_error_returns_false(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text='boom'))
        notifier = HttpEmailNotifier(API_URL, transport=transport)

        assert await notifier.send_status_change(status_event()) is False

    async def test_network_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        notifier = HttpEmailNotifier(API_URL, transport=httpx.MockTransport(handler))

        assert await notifier.send_welcome('alice@fixmyarea.org', 'Alice') is False


class TestLogNotifier:

    async def test_always_succeeds(self):
        notifier = LogNotifier(reveal_otp=False)
        assert await notifier.send_otp('alice@fixmyarea.org', '111111') is True
        assert await notifier.send_status_change(status_event()) is True
        assert await notifier.send_welcome('alice@fixmyarea.org', 'Alice') is True
