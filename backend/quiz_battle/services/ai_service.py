"""
外部AI服务（OpenAI兼容接口）

出题与开放题评分都通过这里调用外部模型，要求模型以JSON格式输出。
"""

import json
import re
from typing import Any, Optional

import httpx
from loguru import logger

from quiz_battle.core.config import settings


class AIServiceError(Exception):
    """外部AI服务调用失败"""


class AIService:
    """外部AI模型调用服务"""

    def __init__(
        self,
        api_url: Optional[str] = None,
        model_id: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url if api_url is not None else settings.AI_API_URL
        self.model_id = model_id if model_id is not None else settings.AI_MODEL_ID
        self.api_key = api_key if api_key is not None else settings.AI_API_KEY
        self.timeout = timeout or settings.AI_TIMEOUT
        self.transport = transport  # 测试时注入 httpx.MockTransport

    @property
    def available(self) -> bool:
        return bool(self.api_url and self.model_id)

    def _build_complete_api_url(self, base_url: str) -> str:
        """补全为 /v1/chat/completions 端点"""
        base_url = base_url.rstrip('/')
        if base_url.endswith('/v1/chat/completions'):
            return base_url
        elif base_url.endswith('/v1'):
            return f"{base_url}/chat/completions"
        else:
            return f"{base_url}/v1/chat/completions"

    def _build_request_body(self, message: str, temperature: float, max_tokens: int) -> dict:
        """构建请求体，要求JSON输出"""
        return {
            "model": self.model_id,
            "messages": [
                {"role": "system", "content": "You are a quiz engine. Reply with a single JSON object and nothing else."},
                {"role": "user", "content": message}
            ],
            "stream": False,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key is not None and self.api_key.strip():
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def chat(self, message: str, temperature: float = 0.4, max_tokens: int = 2000) -> str:
        """与外部模型进行对话，返回文本内容"""
        if not self.available:
            raise AIServiceError("AI service is not configured")

        api_endpoint = self._build_complete_api_url(self.api_url)
        request_body = self._build_request_body(message, temperature, max_tokens)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(api_endpoint, json=request_body, headers=self._headers())
                response.raise_for_status()
                result = response.json()
        except httpx.TimeoutException as e:
            raise AIServiceError(f"AI request timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise AIServiceError(f"AI service returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise AIServiceError(f"AI request failed: {e}") from e

        if 'choices' in result and len(result['choices']) > 0:
            content = result['choices'][0].get('message', {}).get('content', '')
            if content and content.strip():
                return content

        raise AIServiceError("AI response has no content")

    async def chat_json(self, message: str, temperature: float = 0.4, max_tokens: int = 2000) -> Any:
        """对话并把回复解析为JSON"""
        content = await self.chat(message, temperature=temperature, max_tokens=max_tokens)
        try:
            return parse_json_content(content)
        except ValueError as e:
            logger.warning(f"⚠️ AI返回内容无法解析为JSON: {content[:200]}")
            raise AIServiceError(str(e)) from e


_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_content(content: str) -> Any:
    """解析模型输出的JSON，兼容```json 代码块包裹"""
    text = _FENCE_RE.sub("", content.strip())
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON from AI service: {e}") from e
