# errors.py
from flask import jsonify
from werkzeug.exceptions import HTTPException

_HTTP_CODES = {
    400: ("BAD_REQUEST", "Requête invalide"),
    401: ("UNAUTHORIZED", "Authentification requise"),
    403: ("FORBIDDEN", "Accès refusé"),
    404: ("NOT_FOUND", "Ressource introuvable"),
    405: ("METHOD_NOT_ALLOWED", "Méthode non autorisée"),
    413: ("FILE_TOO_LARGE", "Fichier trop volumineux"),
}


class LibraryError(Exception):
    """Business error carrying an API code and HTTP status."""

    status = 400

    def __init__(self, code, message, status=None, details=None):
        super().__init__(message)
        self.code = code
        self.message = message
        if status is not None:
            self.status = status
        self.details = details

    def to_dict(self):
        body = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return {"error": body}


class ValidationError(LibraryError):
    status = 400

    def __init__(self, message, details=None, code="VALIDATION_ERROR"):
        super().__init__(code, message, details=details)


class NotFoundError(LibraryError):
    status = 404

    def __init__(self, message, code="NOT_FOUND", details=None):
        super().__init__(code, message, details=details)


class ConflictError(LibraryError):
    """Request is well-formed but the library state refuses it (422)."""

    status = 422


def error_response(code, message, status, details=None):
    return jsonify(LibraryError(code, message, status, details).to_dict()), status


def register_error_handlers(app):
    @app.errorhandler(LibraryError)
    def _library_error(err):
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(HTTPException)
    def _http_error(err):
        code, message = _HTTP_CODES.get(err.code, ("HTTP_ERROR", err.description))
        return error_response(code, message, err.code)

    @app.errorhandler(Exception)
    def _unexpected(err):
        app.logger.exception(f"❌ Unhandled error: {err}")
        return error_response("INTERNAL_ERROR", "Erreur interne du serveur", 500)
