"""fax-dispatch - send one document to one destination many times and track every copy.

This package uploads a document once, creates one backend send job per
requested copy under a bounded concurrency limit, and monitors each resulting
submission through conversion and transmission to a terminal outcome, with
every transition persisted and published as a lifecycle event.
"""

from fax_dispatch.__main__ import main

__all__ = ["main"]
