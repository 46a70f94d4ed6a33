import aiosmtplib
import pytest

from dmarc_sender.models import TransportCandidate
from dmarc_sender.smtp_pool import SMTPPool


class DummySMTP:
    def __init__(self, hostname, port, start_tls=False, use_tls=False, timeout=None, local_hostname=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.local_hostname = local_hostname
        self.login_credentials = None
        self.is_connected = False
        self.quit_called = False
        self.closed = False
        self.alive = True
        self.sent = []
        self.raise_error = None

    async def connect(self):
        self.is_connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise RuntimeError("Connection dead")
        return 250, "OK"

    async def sendmail(self, sender, recipients, body, timeout=None):
        if self.raise_error:
            raise self.raise_error
        self.sent.append((sender, recipients, body))
        return {}, "2.0.0 Ok: queued as ABC"

    async def quit(self):
        self.quit_called = True
        self.is_connected = False

    def close(self):
        self.closed = True
        self.is_connected = False


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("dmarc_sender.smtp_pool.aiosmtplib.SMTP", factory)
    return created


SMARTHOST = TransportCandidate(
    host="relay.example.com", port=587, user="user", password="pass", helo="reporter.example", persistent=True
)
DIRECT = TransportCandidate(host="mx.example.net", port=25, encryption="none", helo="reporter.example")


@pytest.mark.asyncio
async def test_persistent_connection_is_reused(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection(SMARTHOST)
    smtp2 = await pool.get_connection(SMARTHOST)

    assert smtp1 is smtp2
    assert smtp1.login_credentials == ("user", "pass")
    assert smtp1.start_tls is True
    assert smtp1.local_hostname == "reporter.example"


@pytest.mark.asyncio
async def test_expired_persistent_connection_is_replaced(patch_aiosmtplib):
    pool = SMTPPool(ttl=-1)
    smtp1 = await pool.get_connection(SMARTHOST)
    smtp2 = await pool.get_connection(SMARTHOST)

    assert smtp1.quit_called is True
    assert smtp2 is not smtp1


@pytest.mark.asyncio
async def test_single_use_connection_closed_after_send(patch_aiosmtplib):
    pool = SMTPPool()
    response = await pool.send(DIRECT, "noreply@reporter.example", "dmarc@example.net", b"data")

    assert response == "2.0.0 Ok: queued as ABC"
    smtp = patch_aiosmtplib[0]
    assert smtp.sent == [("noreply@reporter.example", ["dmarc@example.net"], b"data")]
    assert smtp.start_tls is False and smtp.use_tls is False
    assert smtp.quit_called is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_failed_send_drops_pooled_connection(patch_aiosmtplib):
    pool = SMTPPool()
    smtp = await pool.get_connection(SMARTHOST)
    smtp.raise_error = aiosmtplib.SMTPResponseException(451, "try later")

    with pytest.raises(aiosmtplib.SMTPResponseException):
        await pool.send(SMARTHOST, "a@example.com", "b@example.net", b"data")

    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_connect_failure_closes_socket(monkeypatch, patch_aiosmtplib):
    async def refuse(self):
        raise aiosmtplib.SMTPConnectError("refused")

    monkeypatch.setattr(DummySMTP, "connect", refuse)
    pool = SMTPPool()
    with pytest.raises(aiosmtplib.SMTPConnectError):
        await pool.get_connection(DIRECT)
    assert patch_aiosmtplib[0].closed is True


@pytest.mark.asyncio
async def test_close_all(patch_aiosmtplib):
    pool = SMTPPool()
    smtp = await pool.get_connection(SMARTHOST)
    await pool.close_all()
    assert smtp.quit_called is True
    assert pool.pool == {}
