import os, time, httpx, asyncio, logging
from .errors import ProviderError
from .settings import REPLICATE_POLL_INTERVAL_MS, REPLICATE_POLL_TIMEOUT_S

logger = logging.getLogger(__name__)

API_BASE = "https://api.replicate.com/v1"

def _headers():
    token = os.getenv("REPLICATE_API_TOKEN", "")
    if not token:
        raise ProviderError("REPLICATE_API_TOKEN is not set; please configure your .env", provider="replicate")
    return {"Authorization": f"Token {token}"}

def is_replicate_model(model: str) -> bool:
    return "/" in model

def _parse_selector(selector: str):
    # Returns a tuple (mode, data)
    # mode == "version": data={"version": <hash>}
    # mode == "model": data={"owner": <owner>, "name": <name>}
    owner_name, _, version = selector.partition(":")
    if version:
        return "version", {"version": version}
    owner, name = owner_name.split("/", 1)
    return "model", {"owner": owner, "name": name}

def aspect_ratio_for_size(size: str) -> str:
    try:
        w, h = (int(v) for v in size.lower().split("x", 1))
    except ValueError:
        return "9:16"
    if h > w:
        return "9:16"
    if w > h:
        return "16:9"
    return "1:1"

def _fail(what: str, r: httpx.Response) -> ProviderError:
    logger.error(f"Replicate {what} failed {r.status_code}: {r.text}")
    return ProviderError(f"Replicate {what} failed {r.status_code}", provider="replicate",
                         status_code=r.status_code, response_body=r.text)

async def create_and_wait_image(model: str, prompt: str, size: str) -> str:
    logger.info(f"Starting Replicate image generation with {model} for prompt: {prompt[:100]}...")

    json_body = {
        "input": {
            "prompt": prompt,
            "aspect_ratio": aspect_ratio_for_size(size),
            "num_outputs": 1,
        }
    }
    mode, data = _parse_selector(model)
    if mode == "version":
        json_body["version"] = data["version"]
        url = f"{API_BASE}/predictions"
    else:
        url = f"{API_BASE}/models/{data['owner']}/{data['name']}/predictions"

    try:
        async with httpx.AsyncClient(timeout=30) as client:
            r = await client.post(url, headers={**_headers(), "Content-Type": "application/json"}, json=json_body)
            if r.status_code >= 400:
                raise _fail("create", r)
            pred_id = r.json()["id"]
            logger.info(f"Replicate prediction created with ID: {pred_id}")

            start = time.time()
            while True:
                s = await client.get(f"{API_BASE}/predictions/{pred_id}", headers=_headers())
                if s.status_code >= 400:
                    raise _fail("status", s)
                body = s.json()
                status = body.get("status")
                logger.info(f"Replicate prediction {pred_id} status: {status}")

                if status in ("succeeded", "failed", "canceled"):
                    if status != "succeeded":
                        raise ProviderError(
                            f"Replicate prediction {status}: {body.get('error')}",
                            provider="replicate",
                            response_body=str(body.get("logs") or ""),
                        )
                    output = body.get("output")
                    if isinstance(output, str):
                        return output
                    if isinstance(output, list) and output:
                        logger.info(f"Replicate prediction succeeded, got output URL: {output[0]}")
                        return output[0]
                    raise ProviderError("Replicate succeeded but no output URL", provider="replicate")
                if time.time() - start > REPLICATE_POLL_TIMEOUT_S:
                    raise ProviderError(f"Replicate polling timeout after {REPLICATE_POLL_TIMEOUT_S}s", provider="replicate")
                await asyncio.sleep(REPLICATE_POLL_INTERVAL_MS / 1000.0)
    except httpx.HTTPError as e:
        logger.error(f"Replicate transport error: {e}")
        raise ProviderError(f"Replicate request failed: {e}", provider="replicate") from e
