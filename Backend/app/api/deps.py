"""
Accessors for the process-wide services created in main.py's lifespan.
"""
from fastapi import Request

from app.services.enrichment import Enricher
from app.services.job_processor import JobProcessor
from app.services.job_store import JobStore
from app.services.storage import StorageProvider
from app.services.validation_sessions import ValidationSessionStore


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_processor(request: Request) -> JobProcessor:
    return request.app.state.processor


def get_enricher(request: Request) -> Enricher:
    return request.app.state.enricher


def get_storage(request: Request) -> StorageProvider:
    return request.app.state.storage


def get_sessions(request: Request) -> ValidationSessionStore:
    return request.app.state.validation_sessions
