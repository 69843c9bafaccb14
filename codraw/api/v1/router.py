from fastapi import APIRouter

from codraw.api.v1 import boards, voice, whiteboards


api_router = APIRouter(prefix="/v1")

api_router.include_router(whiteboards.router)
api_router.include_router(boards.router)
api_router.include_router(voice.router)
