import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from directmsg import config
from directmsg.database.connection import close_mongo_connection, connect_to_mongo, get_database
from directmsg.repositories.conversation_repository import ConversationRepository
from directmsg.repositories.message_repository import MessageRepository
from directmsg.repositories.profile_repository import ProfileRepository
from directmsg.routers.attachments import router as attachments_router
from directmsg.routers.chat import router as chat_router
from directmsg.routers.conversations import router as conversations_router
from directmsg.utils.realtime_bus import close_bus


logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def ensure_indexes(db) -> None:
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await ProfileRepository(db).ensure_indexes()


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    await ensure_indexes(get_database())
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Direct messaging", lifespan=lifespan)


app.include_router(conversations_router)
app.include_router(chat_router)
app.include_router(attachments_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "Connected to MongoDB!", "collections": collections}
