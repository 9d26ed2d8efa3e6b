"""Error taxonomy shared by the dashboard API, the bot webhook and the bot.

Each error knows the HTTP status it maps to; the Flask apps render any
``TicketError`` as ``{"error": message}`` with that status.
"""


class TicketError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(TicketError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(TicketError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(TicketError):
    status_code = 404
    default_message = "Not found"


class InvalidArgument(TicketError):
    status_code = 400
    default_message = "Invalid argument"


class Conflict(TicketError):
    status_code = 409
    default_message = "Conflict"


class DependencyFailure(TicketError):
    status_code = 500
    default_message = "Server error"
