"""Persistence layer for docflow.

SQLAlchemy Core tables back the job queues, the user-facing background task
records, document processing records and the scraped document corpus.
"""
