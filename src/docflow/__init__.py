"""docflow: background processing backend for council document analysis.

This package contains the job queues, workers, notification hub, and HTTP API
that turn uploaded files, scraped pages, and recorded sessions into analysed
documents.
"""
