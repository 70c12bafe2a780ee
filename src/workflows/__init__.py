"""
Workflows module - review, digest building and the pipeline runner.
"""
from workflows.digest import DigestBuilder
from workflows.pipeline import ContentPipeline, RunSummary
from workflows.review import ReviewWorkflow

__all__ = [
    "ContentPipeline",
    "DigestBuilder",
    "ReviewWorkflow",
    "RunSummary",
]
