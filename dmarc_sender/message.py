"""Rendering of reports and notices into MIME messages."""

from __future__ import annotations

import gzip
from email import policy
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

from .config_loader import OrganizationSettings
from .models import Report

TOO_BIG_TEMPLATE = """\
This is a 'too big' DMARC notice. The aggregate report was NOT delivered.

Report URI: {uri}
Report Domain: {report_domain}
Report ID: {report_id}
Report size: {report_bytes} bytes (compressed)

The report exceeds the maximum size declared for this receiver in the
domain's DMARC record. Raise or remove the size limit in the rua tag to
receive future reports.

Submitted by {submitter}
"""


def compress_report(report: Report) -> bytes:
    """Gzip the rendered report document."""
    return gzip.compress(report.render().encode("utf-8"))


def report_filename(report: Report, org: OrganizationSettings) -> str:
    """Attachment name: ``receiver!policy-domain!begin!end.xml.gz``."""
    submitter = org.domain or org.email.rpartition("@")[2] or "localhost"
    begin = report.begin if report.begin is not None else 0
    end = report.end if report.end is not None else 0
    return f"{submitter}!{report.domain}!{begin}!{end}.xml.gz"


def _base_message(org: OrganizationSettings, to: str, subject: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = f"{org.org_name} <{org.email}>" if org.org_name else org.email
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid(domain=org.domain or None)
    return msg


def build_report_message(report: Report, to: str, compressed: bytes, org: OrganizationSettings) -> EmailMessage:
    """Wrap a compressed report in a message addressed to ``to``."""
    submitter = org.domain or org.email.rpartition("@")[2]
    msg = _base_message(
        org,
        to,
        f"Report Domain: {report.domain} Submitter: {submitter} Report-ID: <{report.id}>",
    )
    msg.set_content(
        f"This is an aggregate DMARC report for {report.domain}.\n\n"
        f"Report-ID: {report.id}\n"
        f"Submitter: {org.org_name or submitter}\n"
    )
    msg.add_attachment(
        compressed,
        maintype="application",
        subtype="gzip",
        filename=report_filename(report, org),
    )
    return msg


def too_big_notice(*, uri: str, report_bytes: int, report_id: str, report_domain: str, submitter: str = "") -> str:
    """Body of the notice sent when a report exceeds a receiver's size cap."""
    return TOO_BIG_TEMPLATE.format(
        uri=uri,
        report_bytes=report_bytes,
        report_id=report_id,
        report_domain=report_domain,
        submitter=submitter or "the reporting organization",
    )


def build_too_big_message(report: Report, to: str, body: str, org: OrganizationSettings) -> EmailMessage:
    """Wrap a too-big notice for ``to``."""
    msg = _base_message(org, to, f"DMARC too big report: {report.domain} Report-ID: <{report.id}>")
    msg.set_content(body)
    return msg


def as_bytes(msg: EmailMessage) -> bytes:
    """Serialise a message with SMTP (CRLF) line endings."""
    return msg.as_bytes(policy=policy.SMTP)
