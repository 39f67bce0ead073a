"""Guardrails simples: sanitização de texto e normalização de telefone/JID."""
import re

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
NON_DIGITS = re.compile(r"\D+")

def sanitize_text(text: str) -> str:
    """Remove caracteres de controle preservando quebras de linha."""
    text = CONTROL_CHARS.sub("", text or "")
    return "\n".join(" ".join(line.split()) for line in text.strip().splitlines())

def normalize_phone(raw: str | None) -> str | None:
    """Normaliza para E.164 (`+5511999999999`). Retorna None se não houver dígitos suficientes."""
    digits = NON_DIGITS.sub("", raw or "")
    if len(digits) < 8:
        return None
    return f"+{digits}"

def jid_to_phone(jid: str | None) -> str | None:
    """`5511999999999@s.whatsapp.net` → `+5511999999999`. Grupos (`@g.us`) não são contatos."""
    if not jid or jid.endswith("@g.us"):
        return None
    user = jid.split("@", 1)[0].split(":", 1)[0]
    return normalize_phone(user)

def phone_to_number(phone: str) -> str:
    """Formato aceito pela Evolution no envio: só dígitos."""
    return NON_DIGITS.sub("", phone or "")
