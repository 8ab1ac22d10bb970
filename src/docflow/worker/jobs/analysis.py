"""Worker handler for ``analyze-document`` jobs."""

from __future__ import annotations

import logging
from typing import Any, Dict

from docflow.services.analysis import DocumentAnalysisService
from docflow.services.scoring import DocumentScorer
from docflow.store.job_queue import Job
from docflow.worker.runner import JobContext

LOGGER = logging.getLogger(__name__)


class AnalysisJobHandler:
    """Build the analysis context, score the document and generate prompts.

    Errors are returned as ``success: False`` results rather than raised, so a
    missing document does not burn retry attempts.
    """

    def __init__(self, *, analysis: DocumentAnalysisService, scorer: DocumentScorer) -> None:
        self._analysis = analysis
        self._scorer = scorer

    def __call__(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        user_id = job.data["user_id"]
        document_id = job.data["document_id"]
        document_title = job.data.get("document_title") or ""
        try:
            ctx.update_progress({"progress": 10, "description": "Pobieranie dokumentu..."})
            context = self._analysis.build_analysis_context(user_id, document_id)
            if context is None:
                raise LookupError("Nie znaleziono dokumentu")

            ctx.update_progress({"progress": 30, "description": "Wyszukiwanie druków i załączników..."})
            found = [ref.to_dict() for ref in context.references if ref.found]

            ctx.update_progress({"progress": 60, "description": "Ocena ważności dokumentu..."})
            score = self._scorer.calculate_score(context.main_document)

            ctx.update_progress({"progress": 80, "description": "Generowanie promptu analizy..."})
            prompt = self._analysis.generate_analysis_prompt(context)

            ctx.update_progress({"progress": 100, "description": "Analiza zakończona"})
            LOGGER.info(
                "Analysis ready document_id=%s found=%s missing=%s",
                document_id,
                len(found),
                len(context.missing_references),
            )
            return {
                "success": True,
                "document_id": document_id,
                "document_title": context.main_document["title"] or document_title,
                "analysis_prompt": prompt.prompt,
                "system_prompt": prompt.system_prompt,
                "score": score.to_dict(),
                "references": {"found": found, "missing": context.missing_references},
            }
        except Exception as exc:
            LOGGER.exception("Analysis failed for document %s", document_id)
            return {
                "success": False,
                "document_id": document_id,
                "document_title": document_title,
                "error": str(exc) or "Analysis failed",
            }


__all__ = ["AnalysisJobHandler"]
