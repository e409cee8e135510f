# ens_assessment/messages.py

import logging

logger = logging.getLogger("ens_assessment")

DEFAULT_LOCALE = "es"

MESSAGES = {
    "es": {
        "welcome": "Bienvenido a la evaluación de cumplimiento del ENS. Vamos a revisar las medidas una a una.",
        "question_intro": "[{domain}{measure}] {question_prompt}",
        "followup_template": "{question_prompt} Necesito saber: {field_description}.",
        "confirmation": "Antes de guardar la respuesta a «{question_prompt}», confirme estos datos: {summary}. ¿Es correcto?",
        "confirmation_declined": "De acuerdo, no guardo nada todavía. Revisemos de nuevo este dato.",
        "answer_saved": "Respuesta guardada para {question_id} (versión {version}).",
        "assessment_complete": "Ha completado todas las preguntas de la evaluación ENS. Puede consultar el progreso o corregir cualquier respuesta.",
        "degraded": "No he podido analizar su mensaje en este momento. No se ha perdido nada de lo registrado; por favor, reenvíe el mensaje.",
        "degraded_escalated": (
            "El asistente está funcionando en modo degradado: el servicio de análisis no ha respondido "
            "en los últimos {failures} intentos. Sus respuestas anteriores están a salvo; inténtelo de nuevo más tarde."
        ),
        "edit_started": "De acuerdo, vamos a corregir «{field_description}» de la pregunta {question_id}.",
        "delete_done": "La respuesta a {question_id} se ha eliminado (versión de baja {version}). La pregunta vuelve a estar pendiente.",
    },
    "en": {
        "welcome": "Welcome to the ENS compliance assessment. We will go through the security measures one by one.",
        "question_intro": "[{domain}{measure}] {question_prompt}",
        "followup_template": "{question_prompt} I still need: {field_description}.",
        "confirmation": "Before saving the answer to \"{question_prompt}\", please confirm: {summary}. Is that correct?",
        "confirmation_declined": "Understood, nothing is saved yet. Let's go over this detail again.",
        "answer_saved": "Answer saved for {question_id} (version {version}).",
        "assessment_complete": "You have answered every question of the ENS assessment. You can review progress or correct any answer.",
        "degraded": "I could not analyse your message right now. Nothing you told me was lost; please send it again.",
        "degraded_escalated": (
            "The assistant is running in degraded mode: the analysis service has not responded "
            "for the last {failures} attempts. Your previous answers are safe; please try again later."
        ),
        "edit_started": "Sure, let's correct \"{field_description}\" for question {question_id}.",
        "delete_done": "The answer to {question_id} was removed (tombstone version {version}). The question is open again.",
    },
}


def get_message(locale: str, key: str, **kwargs) -> str:
    table = MESSAGES.get((locale or DEFAULT_LOCALE).lower()[:2]) or MESSAGES[DEFAULT_LOCALE]
    template = table.get(key) or MESSAGES[DEFAULT_LOCALE][key]
    try:
        return template.format(**kwargs)
    except KeyError as e:
        logger.warning(f"get_message: missing placeholder {e} for message '{key}'")
        return template
