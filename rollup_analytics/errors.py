"""
Error Taxonomy

User-facing errors carry the HTTP status an API layer should answer with.
"""


class AnalyticsError(Exception):
    """Base class for all engine errors"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotExistsError(AnalyticsError):
    """Lookup miss"""
    status_code = 404

    def __init__(self, item: str):
        super().__init__(f"{item} does not exist")
        self.item = item


class AlreadyExistsError(AnalyticsError):
    """Duplicate create"""
    status_code = 400

    def __init__(self, item: str):
        super().__init__(f"{item} already exists")
        self.item = item


class InvalidRequestError(AnalyticsError):
    """Bad reference, malformed filter or other non-retryable user error"""
    status_code = 400


class DateRangeTooLargeError(InvalidRequestError):
    def __init__(self, message: str = (
        "Date interval is too big. Please narrow the date range or use different date dimension."
    )):
        super().__init__(message)


class UnsupportedAggregationError(InvalidRequestError):
    pass


class InternalError(AnalyticsError):
    """Unexpected backend failure"""
    status_code = 500


class RefreshLeaseExpiredError(InternalError):
    """A refresh ticket was consumed after its lease ran out"""
