# /leadflow/services/security_service.py

import hmac
import hashlib


class SecurityService:
    @staticmethod
    def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
        """Checks Meta's `X-Hub-Signature-256: sha256=<hex>` header against the raw body."""
        if not signature or not signature.startswith('sha256=') or not secret:
            return False
        expected_signature = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected_signature, signature[7:])
