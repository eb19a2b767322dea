"""
HMAC-SHA256 签名

请求通道: 对 timestamp + METHOD + path + body 签名，生成认证头
推送通道: 对 "{timestamp}WS_AUTH" 签名，用于 auth 控制消息
"""

import hashlib
import hmac
import string
import time
from typing import Dict, Optional

KEY_ID_HEADER = "ENCLAVE-KEY-ID"
TIMESTAMP_HEADER = "ENCLAVE-TIMESTAMP"
SIGN_HEADER = "ENCLAVE-SIGN"


def now_ms() -> int:
    return int(time.time() * 1000)


class HmacAuth:
    """API Key/Secret 签名器"""

    def __init__(self, api_key: str, api_secret: str):
        self._api_key = api_key
        self._api_secret = api_secret

    @property
    def api_key(self) -> str:
        return self._api_key

    def sign(self, message: str) -> str:
        """返回 message 的十六进制 HMAC-SHA256 签名"""
        return hmac.new(
            self._api_secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

    def generate_auth_headers(
        self,
        method: str,
        path: str,
        body: str = "",
        timestamp: Optional[int] = None,
    ) -> Dict[str, str]:
        """
        生成请求认证头

        Args:
            method: HTTP 方法
            path: 路径 (含查询串)
            body: 序列化后的请求体, GET 为空串
            timestamp: 毫秒时间戳, 默认当前时间
        """
        if timestamp is None:
            timestamp = now_ms()
        signature = self.sign(f"{timestamp}{method.upper()}{path}{body}")

        return {
            KEY_ID_HEADER: self._api_key,
            TIMESTAMP_HEADER: str(timestamp),
            SIGN_HEADER: signature,
        }

    def ws_auth_message(self, timestamp: Optional[int] = None) -> Dict:
        """推送通道 auth 控制消息"""
        if timestamp is None:
            timestamp = now_ms()
        return {
            "op": "auth",
            "timestamp": timestamp,
            "apiKey": self._api_key,
            "signature": self.sign(f"{timestamp}WS_AUTH"),
        }

    def validate_webhook_signature(self, signature: str, timestamp: str, body: str) -> bool:
        """校验 webhook 签名 (常数时间比较)"""
        expected = self.sign(f"{timestamp}{body}")
        if len(signature) != len(expected) or not all(c in string.hexdigits for c in signature):
            return False
        return hmac.compare_digest(signature.lower(), expected)
