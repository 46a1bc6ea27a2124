import aiohttp
import logging
import time

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I encountered an error while processing your request."


class OpenRouterService:
    """Service to interact with the OpenRouter chat completions API."""

    API_URL = "https://openrouter.ai/api/v1/chat/completions"

    SYSTEM_PROMPT = """You are a friendly, helpful, and knowledgeable AI assistant in a Discord server.

Guidelines:
- Be conversational, warm, and engaging while maintaining a helpful tone
- Provide concise but informative responses
- Use appropriate emojis occasionally to make your responses more engaging
- Be respectful and considerate of all users
- Keep answers short enough to fit in a Discord message"""

    def __init__(self, api_key: str | None, model: str = "meta-llama/llama-3-8b-instruct", timeout: float = 30.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        if not self.api_key:
            logger.warning("OPENROUTER_API_KEY not set. /chat will answer with a fallback message.")

    async def generate_reply(self, prompt: str) -> str:
        """
        Ask the model for a reply to `prompt`.
        Always returns text; failures produce the fallback reply.
        """
        if not self.api_key:
            return FALLBACK_REPLY

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": 500,
        }

        start_time = time.time()
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.API_URL, headers=headers, json=payload) as resp:
                    if resp.status == 200:
                        data = await resp.json()
                        content = data["choices"][0]["message"]["content"]
                        elapsed = time.time() - start_time
                        logger.info(f"OpenRouter replied in {elapsed:.2f}s")
                        return content.strip() or FALLBACK_REPLY
                    elif resp.status == 401:
                        logger.error("OpenRouter authentication failed. Check API key.")
                    elif resp.status == 429:
                        logger.warning("OpenRouter rate limit hit.")
                    else:
                        text = await resp.text()
                        logger.error(f"OpenRouter API error {resp.status}: {text}")
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"OpenRouter returned an unexpected payload: {e}")
        except Exception as e:
            logger.error(f"Failed to get OpenRouter reply: {e}")

        return FALLBACK_REPLY
