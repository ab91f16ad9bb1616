"""
Custom exceptions for the field visits API
"""
from rest_framework.exceptions import APIException


class EventStoreUnavailable(APIException):
    status_code = 503
    default_detail = 'Check-in records could not be loaded. Please try again.'
    default_code = 'event_store_unavailable'


class VisitNotFound(APIException):
    status_code = 404
    default_detail = 'Visit not found.'
    default_code = 'visit_not_found'


class InvalidVisitRecord(APIException):
    status_code = 400
    default_detail = 'Record is not a check-in.'
    default_code = 'invalid_visit_record'
