import logging

from fastapi import FastAPI, Header, HTTPException, Request, status
from telegram import Update

from .config import get_settings
from .db import init_db
from .telegram_bot import ALLOWED_UPDATES, build_application, close_orchestrator

settings = get_settings()
logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/telegram/webhook"

app = FastAPI(title="Financy Telegram Gateway", version="1.0.0")
app.state.telegram = None


@app.on_event("startup")
async def on_startup() -> None:
    """Ensure database tables exist and bring the bot up in webhook mode."""
    init_db()
    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN is not set; webhook endpoint disabled")
        return

    application = build_application()
    await application.initialize()
    if settings.telegram_webhook_url:
        await application.bot.set_webhook(
            url=settings.telegram_webhook_url.rstrip("/") + WEBHOOK_PATH,
            secret_token=settings.telegram_webhook_secret,
            allowed_updates=ALLOWED_UPDATES,
            drop_pending_updates=True,
        )
        logger.info("Telegram webhook registered at %s", settings.telegram_webhook_url)
    await application.start()
    app.state.telegram = application


@app.on_event("shutdown")
async def on_shutdown() -> None:
    application = app.state.telegram
    if application is None:
        return
    await application.stop()
    await application.shutdown()
    await close_orchestrator(application)
    app.state.telegram = None


@app.post(WEBHOOK_PATH)
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
) -> dict[str, bool]:
    if settings.telegram_webhook_secret and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret")

    application = app.state.telegram
    if application is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Telegram bot is not configured")

    update = Update.de_json(await request.json(), application.bot)
    await application.process_update(update)
    return {"ok": True}


@app.get("/")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run("financy.main:app", host="0.0.0.0", port=8000)
