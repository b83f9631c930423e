import re
import secrets
import string


_KEY_ALPHABET = string.ascii_uppercase + string.digits
_ID_ALPHABET = string.ascii_letters + string.digits


def generate_access_token() -> str:
    # Bearer credential: may travel in an email link, so it must be unguessable
    return secrets.token_urlsafe(32)


def product_prefix(product_name: str) -> str:
    letters = re.sub(r"[^A-Z]", "", (product_name or "").upper())
    if len(letters) >= 4:
        return letters[:4]

    prefix = "".join(word[0].upper() for word in (product_name or "").split() if word[:1].isalpha())[:4]
    while len(prefix) < 4:
        prefix += secrets.choice(string.ascii_uppercase)
    return prefix


def generate_license_key(product_name: str) -> str:
    segments = ["".join(secrets.choice(_KEY_ALPHABET) for _ in range(4)) for _ in range(4)]
    return "-".join([product_prefix(product_name)] + segments)


def generate_activation_id() -> str:
    return "act_" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(12))
