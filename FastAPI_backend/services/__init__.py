"""Service layer for business logic"""
from .errors import AlertError, NotFound, InvalidInput, Unauthorized, DeliveryFailure
