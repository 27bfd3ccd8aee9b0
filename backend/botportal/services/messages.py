"""
User-facing texts written into assistant messages.

Keys are stable; ``agent_locale`` picks the language. Unknown locales fall
back to English.
"""
from typing import Dict

CATALOG: Dict[str, Dict[str, str]] = {
    "en": {
        "processing": "🤖 Processing your question...",
        "empty_reply": (
            "I received your message but my response is being processed. "
            "Please try again in a moment."
        ),
        "unparseable_reply": (
            "I received your message but had trouble formatting my response. "
            "Please try again."
        ),
        "timeout": (
            "⏱️ Your question is taking longer than expected to process (more than "
            "{duration}). Please try a more specific question or try again later."
        ),
        "too_complex": (
            "⏱️ The query is very complex and took too long to process. "
            "Please try to be more specific or split your question into smaller parts."
        ),
        "agent_error": "Error processing the query: {status}",
        "network_error": "Sorry, there was an error processing your message. Please try again.",
        "unavailable": (
            "The assistant is temporarily unavailable. Please try again in a few minutes."
        ),
        "shutdown": "Processing was interrupted. Please send your message again.",
    },
    "es": {
        "processing": "🤖 Procesando tu consulta...",
        "empty_reply": (
            "Recibí tu mensaje pero mi respuesta aún se está procesando. "
            "Por favor, inténtalo de nuevo en un momento."
        ),
        "unparseable_reply": (
            "Recibí tu mensaje pero tuve problemas al dar formato a mi respuesta. "
            "Por favor, inténtalo de nuevo."
        ),
        "timeout": (
            "⏱️ Tu consulta está tardando más de lo esperado en procesarse (más de "
            "{duration}). Por favor, intenta con una pregunta más específica "
            "o vuelve a intentarlo más tarde."
        ),
        "too_complex": (
            "⏱️ La consulta es muy compleja y tardó demasiado en procesarse. "
            "Por favor, intenta ser más específico o divide tu pregunta en partes más pequeñas."
        ),
        "agent_error": "Error procesando la consulta: {status}",
        "network_error": "Lo siento, hubo un error al procesar tu mensaje. Por favor, inténtalo de nuevo.",
        "unavailable": (
            "El asistente no está disponible temporalmente. "
            "Por favor, inténtalo de nuevo en unos minutos."
        ),
        "shutdown": "El procesamiento se interrumpió. Por favor, envía tu mensaje de nuevo.",
    },
}


def text(key: str, locale: str = "en", **params) -> str:
    """Look up a catalogue entry and format it with params."""
    entries = CATALOG.get(locale) or CATALOG["en"]
    template = entries.get(key) or CATALOG["en"][key]
    return template.format(**params) if params else template


_UNITS = {
    "en": ("second", "seconds", "minute", "minutes"),
    "es": ("segundo", "segundos", "minuto", "minutos"),
}


def duration(seconds: float, locale: str = "en") -> str:
    """Human duration such as '5 minutes' or '30 seconds'."""
    one_s, many_s, one_m, many_m = _UNITS.get(locale) or _UNITS["en"]
    if seconds >= 60:
        value = round(seconds / 60)
        return f"{value} {one_m if value == 1 else many_m}"
    value = max(int(round(seconds)), 1)
    return f"{value} {one_s if value == 1 else many_s}"
