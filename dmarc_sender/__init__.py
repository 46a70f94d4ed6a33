"""Delivery pipeline for DMARC aggregate reports.

Pending reports are pulled one at a time from a SQLite queue, resolved into
their ``rua`` receivers, compressed once, optionally DKIM signed and handed to
an ordered list of SMTP transports. Outcomes are classified as delivered,
permanently rejected or transiently failed, and the queue is updated to match.

Example:
    Running one batch from code::

        from dmarc_sender.config_loader import load_settings
        from dmarc_sender.core import ReportSender

        sender = ReportSender(load_settings("dmarc-sender.ini"))
        await sender.run()
"""

__version__ = "0.1.0"
