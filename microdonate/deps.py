from microdonate.core.config import settings

if settings.use_mongo:
    from microdonate.core.db import get_client, get_db
    from microdonate.repos.mongo import MongoRepo
    _repo_singleton = MongoRepo(get_client(), get_db())
else:
    from microdonate.repos.inmemory import InMemoryRepo
    _repo_singleton = InMemoryRepo()


def get_repo():
    return _repo_singleton
