"""Service layer: notifications, scoring, analysis prompts, model clients and recovery."""
