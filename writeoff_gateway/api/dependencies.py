"""Dependency injection for FastAPI endpoints"""

from fastapi import Request

from writeoff_gateway.config import Settings
from writeoff_gateway.infrastructure.clients.aggregator import AggregatorClient
from writeoff_gateway.infrastructure.clients.classifier import ClassifierClient


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_app_settings(request: Request) -> Settings:
    """Settings the app was created with"""
    return request.app.state.settings


def get_aggregator_client(request: Request) -> AggregatorClient:
    """Provide Aggregator API client instance"""
    return AggregatorClient.from_settings(request.app.state.settings)


def get_classifier_client(request: Request) -> ClassifierClient:
    """Provide Classifier API client instance"""
    return ClassifierClient.from_settings(request.app.state.settings)
