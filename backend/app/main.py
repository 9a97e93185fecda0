import logging
import os
from dataclasses import replace
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum
from starlette.concurrency import run_in_threadpool

load_dotenv(Path(__file__).resolve().parents[1] / '.env')

from .cache import (
    ANALYTICS_NAMESPACE,
    POPULAR_NAMESPACE,
    RECENT_NAMESPACE,
    SEARCH_NAMESPACE,
    TTL_LONG,
    TTL_MEDIUM,
    TTL_SHORT,
    TTL_VERY_SHORT,
    USER_NAMESPACES,
    CacheManager,
    get_cache_manager,
    reset_cache_manager,
)
from .cache_middleware import CacheInvalidation, cache_metrics, with_cache
from .listings_store import (
    ENTITY_TYPES,
    get_listing,
    list_listings,
    popular_listings,
    search_listings,
    update_listing,
)
from .models import InvalidationRequest, ListingUpdate, ReviewCreate
from .rate_limit import (
    RATE_LIMIT_CONFIGS,
    RateLimitConfig,
    IPRateLimiter,
    UserRateLimiter,
    rate_limit_stats,
    rate_limited_response,
    scoped_key_generator,
    with_rate_limit,
)
from .storage import create_review, list_listing_reviews, list_user_reviews

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title='Tourism Listings API', version='0.1.0')


def _cors_allowlist() -> list[str]:
    raw = os.getenv('CORS_ALLOW_ORIGINS')
    if raw is None:
        return ['*']
    origins = [origin.strip() for origin in raw.split(',') if origin.strip()]
    return origins or ['*']


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_allowlist(),
    allow_methods=['*'],
    allow_headers=['*'],
)

invalidation = CacheInvalidation()

# Rate-limit counters share the cache, so admin flushes stay inside these.
RESPONSE_NAMESPACES = (
    *ENTITY_TYPES,
    SEARCH_NAMESPACE,
    POPULAR_NAMESPACE,
    RECENT_NAMESPACE,
    ANALYTICS_NAMESPACE,
    *USER_NAMESPACES,
)


def _scoped_limit(preset: str) -> RateLimitConfig:
    return replace(RATE_LIMIT_CONFIGS[preset], key_generator=scoped_key_generator(preset.lower()))


def _user_id_from_request(request: Request) -> str:
    return request.headers.get('x-user-id', 'anonymous')


def _require_entity_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f'Unknown listing type: {entity_type}')


def _require_listing(entity_type: str, listing_id: str) -> dict:
    _require_entity_type(entity_type)
    listing = get_listing(entity_type, listing_id)
    if listing is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Listing not found')
    return listing


def _listings_cache_key(request: Request) -> str:
    return CacheManager.generate_key(request.path_params['entity_type'], dict(request.query_params))


def _listing_detail_cache_key(request: Request) -> str:
    return f"{request.path_params['entity_type']}:{request.path_params['listing_id']}:detail"


def _user_reviews_cache_key(request: Request) -> str:
    return f"user_reviews:{request.path_params['user_id']}"


@app.on_event('shutdown')
async def drain_cache() -> None:
    await get_cache_manager().wait_for_refreshes()
    reset_cache_manager()


@app.get('/api/health')
async def health() -> dict:
    return {'status': 'ok'}


@app.get('/api/search')
@with_rate_limit(_scoped_limit('SEARCH'))
@with_cache(ttl=TTL_SHORT * 2, key_prefix=SEARCH_NAMESPACE)
async def search(
    request: Request,
    q: str = Query(..., min_length=2, max_length=100),
    entity_type: str | None = Query(None, alias='type'),
) -> dict:
    if entity_type is not None:
        _require_entity_type(entity_type)
    results = await run_in_threadpool(search_listings, q, entity_type)
    return {'query': q, 'type': entity_type, 'results': results, 'total': len(results)}


@app.get('/api/popular/{entity_type}')
async def popular(entity_type: str, limit: int = Query(5, ge=1, le=50)) -> dict:
    _require_entity_type(entity_type)

    async def fetch() -> list[dict]:
        return await run_in_threadpool(popular_listings, entity_type, limit)

    listings = await get_cache_manager().get_with_swr(
        f'{POPULAR_NAMESPACE}:{entity_type}:{limit}',
        fetch,
        ttl=TTL_LONG,
        stale_time=TTL_SHORT,
    )
    return {'type': entity_type, 'listings': listings}


@app.get('/api/cache/stats')
async def cache_stats() -> dict:
    return {
        'cache': cache_metrics.get_stats(),
        'rate_limit': rate_limit_stats.get_stats(),
        'entries': len(get_cache_manager().cache),
    }


@app.post('/api/cache/invalidate')
async def invalidate_cache(request: Request, payload: InvalidationRequest) -> dict:
    blocked = IPRateLimiter.check_limit(request, 'admin', _scoped_limit('ADMIN'))
    if blocked is not None:
        return blocked

    if payload.scope == 'all':
        await invalidation.invalidate_namespaces(RESPONSE_NAMESPACES)
    elif payload.scope == 'search':
        await invalidation.invalidate_search()
    elif payload.scope == 'entity':
        if not payload.entity_type:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='entity_type is required.')
        _require_entity_type(payload.entity_type)
        await invalidation.invalidate_entity(payload.entity_type, payload.entity_id)
    else:
        if not payload.user_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='user_id is required.')
        await invalidation.invalidate_user(payload.user_id)
    logger.info('Cache invalidated (scope=%s)', payload.scope)
    return {'invalidated': payload.scope}


@app.get('/api/users/{user_id}/reviews')
@with_cache(ttl=TTL_VERY_SHORT, cache_key_fn=_user_reviews_cache_key)
async def get_user_reviews(request: Request, user_id: str) -> dict:
    reviews = list_user_reviews(user_id)
    return {'user_id': user_id, 'reviews': [review.model_dump(mode='json') for review in reviews]}


@app.get('/api/{entity_type}')
@with_rate_limit(_scoped_limit('PUBLIC'))
@with_cache(ttl=TTL_MEDIUM, cache_key_fn=_listings_cache_key)
async def get_listings(
    request: Request,
    entity_type: str,
    city: str | None = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(24, ge=1, le=100),
) -> dict:
    _require_entity_type(entity_type)
    listings = await run_in_threadpool(list_listings, entity_type, city)
    total = len(listings)
    total_pages = max(1, (total + per_page - 1) // per_page)
    start = (page - 1) * per_page
    return {
        'listings': listings[start : start + per_page],
        'total': total,
        'per_page': per_page,
        'current_page': page,
        'total_pages': total_pages,
    }


@app.get('/api/{entity_type}/{listing_id}')
@with_rate_limit(_scoped_limit('PUBLIC'))
@with_cache(ttl=TTL_MEDIUM, cache_key_fn=_listing_detail_cache_key)
async def get_listing_detail(request: Request, entity_type: str, listing_id: str) -> dict:
    listing = _require_listing(entity_type, listing_id)
    reviews = list_listing_reviews(entity_type, listing_id)
    return {
        'listing': listing,
        'reviews': [review.model_dump(mode='json') for review in reviews],
    }


@app.put('/api/{entity_type}/{listing_id}')
@with_rate_limit(_scoped_limit('ADMIN'))
async def put_listing(request: Request, entity_type: str, listing_id: str, payload: ListingUpdate) -> dict:
    _require_listing(entity_type, listing_id)
    updated = update_listing(entity_type, listing_id, payload.model_dump(exclude_unset=True))
    await invalidation.invalidate_entity(entity_type, listing_id)
    await invalidation.invalidate_search()
    return {'listing': updated}


@app.post('/api/{entity_type}/{listing_id}/reviews', status_code=status.HTTP_201_CREATED)
async def post_review(request: Request, entity_type: str, listing_id: str, payload: ReviewCreate) -> dict:
    _require_listing(entity_type, listing_id)
    user_id = _user_id_from_request(request)
    config = RATE_LIMIT_CONFIGS['USER_CONTENT']
    result = UserRateLimiter.check_user_limit(user_id, 'reviews', config)
    if not result.allowed:
        return rate_limited_response(config, result)

    review = create_review(user_id, entity_type, listing_id, payload)
    await invalidation.invalidate_entity(entity_type, listing_id)
    await invalidation.invalidate_user(user_id)
    return {'review': review.model_dump(mode='json'), 'remaining': result.remaining}


handler = Mangum(app)
