"""Pydantic models: domain objects and API request/response bodies"""
