from fastapi import Request

from review_bot.core.config import Settings
from review_bot.services.queue import DurableQueue
from review_bot.services.record_store import RecordStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_record_store(request: Request) -> RecordStore:
    return request.app.state.record_store


def get_queue(request: Request) -> DurableQueue:
    return request.app.state.queue
