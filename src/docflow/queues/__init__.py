"""Named job queues: analysis, vision, transcription, document processing and scraping."""
