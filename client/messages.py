"""
client/messages.py -- User-facing text for both clients.

The Session Client never shows backend message text to the user. It picks a
line from these tables by ErrorKind, by validation reason, or by operation
outcome. Spanish is the product language; English exists for development
builds and tests that prefer it.

Lookup falls back to the default locale, then to the key itself, so a missing
translation is visible but never crashes a screen.
"""

from __future__ import annotations

from core.errors import ErrorKind

DEFAULT_LOCALE = "es"

MESSAGES: dict[str, dict[str, str]] = {
    "es": {
        # Error kinds
        ErrorKind.VALIDATION.value: "Revisa los datos ingresados.",
        ErrorKind.INVALID_CREDENTIALS.value: "Credenciales incorrectas. Verifica tu correo y contraseña.",
        ErrorKind.ACCOUNT_UNVERIFIED.value: "Tu cuenta no está verificada. Revisa tu correo electrónico.",
        ErrorKind.ACCOUNT_CLOSED.value: "Esta cuenta ha sido cerrada. Contacta al administrador.",
        ErrorKind.TOKEN_EXPIRED.value: "El enlace es inválido o ha expirado. Solicita uno nuevo.",
        ErrorKind.TOKEN_ALREADY_CONSUMED.value: "Token inválido o ya utilizado.",
        ErrorKind.TOKEN_NOT_FOUND.value: "El enlace es inválido o ha expirado.",
        ErrorKind.RATE_LIMITED.value: "Se ha enviado un correo recientemente. Espera antes de solicitar otro.",
        ErrorKind.SERVER_ERROR.value: "Error del servidor. Intenta nuevamente más tarde.",
        ErrorKind.NETWORK_UNREACHABLE.value: "Sin conexión. Verifica tu conexión a internet.",
        ErrorKind.FORBIDDEN.value: "No tienes permisos para realizar esta acción.",
        ErrorKind.NOT_FOUND.value: "No se encontró el recurso solicitado.",
        # Validation reasons
        "reason.duplicate_email": "Ya existe una cuenta con este correo electrónico.",
        "reason.duplicate_username": "Este nombre de usuario ya está en uso.",
        "reason.weak_secret": "La contraseña no cumple los requisitos mínimos.",
        "reason.secret_mismatch": "Las contraseñas no coinciden.",
        # Per-field fallbacks
        "field.email": "Ingresa un correo electrónico válido.",
        "field.username": "El nombre de usuario debe tener entre 3 y 32 caracteres (letras, números o _).",
        "field.full_name": "El nombre completo es obligatorio.",
        "field.secret": "La contraseña no cumple los requisitos mínimos.",
        "field.secret_confirm": "Las contraseñas no coinciden.",
        "field.token": "El enlace es inválido o ha expirado.",
        # Outcomes
        "register.success": "Cuenta creada. Revisa tu correo para verificarla.",
        "login.success": "Sesión iniciada.",
        "logout.success": "Sesión cerrada.",
        "logout.failed": "No se pudo contactar al servidor, pero tu sesión local fue cerrada.",
        "resend.sent": "Si el correo existe y no está verificado, recibirás instrucciones para confirmar tu cuenta.",
        "resend.not_eligible": "Esta cuenta ya está verificada o no existe.",
        "verify.success": "Correo verificado correctamente. Ya puedes iniciar sesión.",
        "reset.requested": "Si el correo existe, recibirás un enlace para restablecer tu contraseña.",
        "reset.success": "Contraseña restablecida correctamente. Ya puedes iniciar sesión.",
        "reset.invalid_secret": "Las contraseñas no coinciden o no cumplen los requisitos.",
        "session.expired": "Tu sesión ha expirado o no tienes permisos. Inicia sesión nuevamente.",
        "guard.denied": "No tienes permisos para acceder a esta sección.",
        "operation.in_progress": "Ya hay una operación en curso.",
    },
    "en": {
        ErrorKind.VALIDATION.value: "Please check the data you entered.",
        ErrorKind.INVALID_CREDENTIALS.value: "Incorrect credentials. Check your email and password.",
        ErrorKind.ACCOUNT_UNVERIFIED.value: "Your account is not verified. Check your email.",
        ErrorKind.ACCOUNT_CLOSED.value: "This account has been closed. Contact the administrator.",
        ErrorKind.TOKEN_EXPIRED.value: "The link is invalid or has expired. Request a new one.",
        ErrorKind.TOKEN_ALREADY_CONSUMED.value: "Invalid or already used token.",
        ErrorKind.TOKEN_NOT_FOUND.value: "The link is invalid or has expired.",
        ErrorKind.RATE_LIMITED.value: "An email was sent recently. Please wait before requesting another.",
        ErrorKind.SERVER_ERROR.value: "Server error. Please try again later.",
        ErrorKind.NETWORK_UNREACHABLE.value: "No connection. Check your internet connection.",
        ErrorKind.FORBIDDEN.value: "You do not have permission to perform this action.",
        ErrorKind.NOT_FOUND.value: "The requested resource was not found.",
        "reason.duplicate_email": "An account with this email already exists.",
        "reason.duplicate_username": "This username is already taken.",
        "reason.weak_secret": "The password does not meet the minimum requirements.",
        "reason.secret_mismatch": "The passwords do not match.",
        "field.email": "Enter a valid email address.",
        "field.username": "Usernames are 3 to 32 letters, digits or underscores.",
        "field.full_name": "Full name is required.",
        "field.secret": "The password does not meet the minimum requirements.",
        "field.secret_confirm": "The passwords do not match.",
        "field.token": "The link is invalid or has expired.",
        "register.success": "Account created. Check your email to verify it.",
        "login.success": "Signed in.",
        "logout.success": "Signed out.",
        "logout.failed": "Could not reach the server, but your local session was closed.",
        "resend.sent": "If the email exists and is not verified, you will receive instructions to confirm your account.",
        "resend.not_eligible": "This account is already verified or does not exist.",
        "verify.success": "Email verified. You can sign in now.",
        "reset.requested": "If the email exists, you will receive a link to reset your password.",
        "reset.success": "Password reset. You can sign in now.",
        "reset.invalid_secret": "The passwords do not match or do not meet the requirements.",
        "session.expired": "Your session has expired or you lack permission. Please sign in again.",
        "guard.denied": "You do not have permission to access this section.",
        "operation.in_progress": "Another operation is already in progress.",
    },
}


class Messages:
    """Locale-bound lookup over MESSAGES."""

    def __init__(self, locale: str = DEFAULT_LOCALE) -> None:
        self.locale = locale if locale in MESSAGES else DEFAULT_LOCALE

    def get(self, key: str) -> str:
        table = MESSAGES[self.locale]
        if key in table:
            return table[key]
        return MESSAGES[DEFAULT_LOCALE].get(key, key)

    def for_kind(self, kind: ErrorKind) -> str:
        return self.get(kind.value)

    def for_field(self, field: str, reason: str | None = None) -> str:
        """Localized text for one invalid field, preferring the specific reason."""
        if reason:
            key = f"reason.{reason}"
            if key in MESSAGES[DEFAULT_LOCALE]:
                return self.get(key)
        key = f"field.{field}"
        if key in MESSAGES[DEFAULT_LOCALE]:
            return self.get(key)
        return self.get(ErrorKind.VALIDATION.value)
