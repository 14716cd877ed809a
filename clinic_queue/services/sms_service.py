"""
Servicio de envío de SMS y WhatsApp vía Twilio.

Lo usa el worker de notificaciones de la cola para los avisos
"faltan 3 turnos" y "es su turno" cuando el canal es SMS o WHATSAPP.

Soporta dos canales:
- SMS: Twilio Programmable SMS
- WhatsApp: Twilio WhatsApp API (mismo SDK, prefijo whatsapp:)

Docs SMS: https://www.twilio.com/docs/sms/api/message-resource
Docs WA:  https://www.twilio.com/docs/whatsapp/api
"""

import asyncio
import logging

from clinic_queue.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class SMSError(Exception):
    """Error de comunicación con Twilio."""

    def __init__(self, message: str, sid: str | None = None):
        self.message = message
        self.sid = sid
        super().__init__(message)


def _credentials_configured() -> bool:
    account_sid = settings.TWILIO_ACCOUNT_SID
    auth_token = settings.TWILIO_AUTH_TOKEN
    return bool(
        account_sid
        and account_sid != "your-twilio-account-sid"
        and auth_token
        and auth_token != "your-twilio-auth-token"
    )


def _international(phone_number: str) -> str:
    if not phone_number.startswith("+"):
        return f"+{phone_number}"
    return phone_number


async def _deliver(phone_number: str, message: str, channel: str) -> dict:
    """Envía por Twilio (o simula si no hay credenciales)."""
    # ── Modo simulación (sin credenciales) ───────────
    if not _credentials_configured():
        logger.warning(f"Twilio credentials no configuradas — simulando envío {channel}")
        logger.info(f"[SIMULATED {channel.upper()}] To: {phone_number} | Message: {message[:80]}...")
        return {
            "sid": "SIMULATED",
            "status": "simulated",
            "to": phone_number,
            "body": message,
            "channel": channel,
        }

    phone_number = _international(phone_number)
    if channel == "whatsapp":
        from_ = f"whatsapp:{settings.TWILIO_WHATSAPP_NUMBER}"
        to = f"whatsapp:{phone_number}"
    else:
        from_ = settings.TWILIO_PHONE_NUMBER
        to = phone_number

    # ── Enviar vía Twilio SDK ────────────────────────
    from twilio.base.exceptions import TwilioRestException
    from twilio.rest import Client

    try:
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        twilio_message = await asyncio.to_thread(
            client.messages.create, body=message, from_=from_, to=to
        )
    except TwilioRestException as e:
        logger.error(f"Twilio error {channel} ({e.code}): {e.msg}")
        raise SMSError(f"Error Twilio ({e.code}): {e.msg}")
    except Exception as e:
        logger.error(f"Error inesperado enviando {channel}: {e}")
        raise SMSError(f"Error enviando {channel}: {str(e)}")

    logger.info(
        f"{channel} enviado a {phone_number} | SID: {twilio_message.sid} | "
        f"Status: {twilio_message.status}"
    )
    return {
        "sid": twilio_message.sid,
        "status": twilio_message.status,
        "to": twilio_message.to,
        "body": message,
        "channel": channel,
    }


async def send_sms(phone_number: str, message: str) -> dict:
    """
    Envía un SMS vía Twilio.
    El número debe incluir código de país con + (ej: +51987654321).
    """
    return await _deliver(phone_number, message, "sms")


async def send_whatsapp(phone_number: str, message: str) -> dict:
    """Envía un mensaje WhatsApp vía Twilio."""
    return await _deliver(phone_number, message, "whatsapp")


async def send_message(
    phone_number: str,
    message: str,
    channel: str = "whatsapp",
) -> dict:
    """
    Fachada unificada: envía por el canal preferido con fallback.
    Si WhatsApp falla, reintenta por SMS automáticamente.

    Returns:
        dict con sid, status, channel usado.
    """
    if channel == "whatsapp":
        try:
            return await send_whatsapp(phone_number, message)
        except SMSError:
            logger.warning(f"WhatsApp falló para {phone_number}, cayendo a SMS")
            result = await send_sms(phone_number, message)
            result["fallback"] = True
            return result
    return await send_sms(phone_number, message)
