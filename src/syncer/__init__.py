"""
Syncer package — pulls conversations and messages for connected pages from
the Graph API and stores them, with per-conversation counts, in PostgreSQL.

Runs are incremental: each (page, platform) keeps an append-only watermark
and only conversations updated since it (minus a safety window) are
fetched again.  Only one run is active per process; its progress is
exposed through ``RunStatusRegistry``.
"""
