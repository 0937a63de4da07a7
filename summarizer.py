"""
Condenses page text into a short visual description for image prompts.
Uses Cloudflare Workers AI when credentials are configured.
"""

import logging
from typing import Optional

import httpx

from cache import LRUCache

logger = logging.getLogger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4/accounts"
SUMMARY_MODEL = "@cf/meta/llama-2-7b-chat-int8"

PROMPT_TEMPLATE = """You are a visual description expert. Extract the most visually descriptive elements from this text passage.
Focus on scenes, characters, environments, colors, actions, and visual details that would make a good image.
Provide a concise description (maximum 75 words) that captures the visual essence.
Do not include any commentary, just the visual description.

{context}

Text passage: "{passage}"

Visual description:"""


class TextSummarizer:
    """Summarizes text with a bounded cache of previous results."""

    def __init__(self, account_id: str = "", api_token: str = "",
                 cache: Optional[LRUCache] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 30.0):
        self.account_id = account_id
        self.api_token = api_token
        self.cache = cache if cache is not None else LRUCache(1000)
        self.transport = transport
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.account_id and self.api_token)

    @staticmethod
    def cache_key(text: str, title: str, chapter_info: str, max_length: int) -> str:
        return f"{text[:100]}|{title}|{chapter_info}|{max_length}"

    async def summarize(self, text: str, title: str = "", chapter_info: str = "",
                        max_length: int = 200) -> str:
        """Get a summary, from the cache when this text was seen before."""
        key = self.cache_key(text, title, chapter_info, max_length)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Using cached summary")
            return cached

        summary = await self._summarize(text, title, chapter_info, max_length)
        self.cache.put(key, summary)
        return summary

    async def _summarize(self, text: str, title: str, chapter_info: str,
                         max_length: int) -> str:
        clean_text = ' '.join(text.split())

        # Short text needs no summary
        if len(clean_text) <= max_length:
            return clean_text

        if not self.configured:
            logger.info("Cloudflare credentials not found, truncating instead of summarizing")
            return clean_text[:max_length]

        context = ""
        if title:
            context += f'Title: "{title}". '
        if chapter_info:
            context += f'Chapter: "{chapter_info}". '

        prompt = PROMPT_TEMPLATE.format(context=context, passage=clean_text[:1000])
        url = f"{CLOUDFLARE_API_BASE}/{self.account_id}/ai/run/{SUMMARY_MODEL}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    url,
                    json={"prompt": prompt},
                    headers={"Authorization": f"Bearer {self.api_token}"},
                )
                response.raise_for_status()
                summary = response.json()["result"]["response"]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning("Summarization failed, truncating instead: %s", e)
            return clean_text[:max_length]

        summary = summary.strip().strip('"\'')
        if len(summary) > max_length:
            summary = summary[:max_length - 3] + "..."
        logger.info("Summarized %d characters into %d", len(clean_text), len(summary))
        return summary
