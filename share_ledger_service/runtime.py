"""Wires settings, database, rails and side-effect handlers into one engine."""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker

from common.redis_client import RedisClient
from common.settings import settings
from share_ledger_service.db import make_engine, make_session_factory
from share_ledger_service.domain import MANUAL_RAILS, Rail
from share_ledger_service.engine import ReconciliationEngine, UserLanes
from share_ledger_service.models import Base
from share_ledger_service.pricing import PricingCatalog, seed_catalog
from share_ledger_service.projector import ViewProjector
from share_ledger_service.proof_store import LocalProofStore
from share_ledger_service.rails.admin_grant import AdminGrantRail
from share_ledger_service.rails.base import RailAdapter
from share_ledger_service.rails.card import PaystackRail
from share_ledger_service.rails.invoice import CentiivRail
from share_ledger_service.rails.manual import ManualRail
from share_ledger_service.rails.onchain import BscUsdtRail
from share_ledger_service.side_effects import Handler, OutboxDispatcher, SideEffectEmitter, default_handlers

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    session_factory: sessionmaker
    engine: ReconciliationEngine
    projector: ViewProjector
    dispatcher: OutboxDispatcher
    proof_store: LocalProofStore
    cache: Optional[RedisClient] = None


def default_rails(session_factory: sessionmaker) -> Dict[Rail, RailAdapter]:
    def company_wallet() -> Optional[str]:
        with session_factory() as session:
            return PricingCatalog(session).get_current().company_wallet_address

    rails: Dict[Rail, RailAdapter] = {
        Rail.CARD: PaystackRail(),
        Rail.INVOICE: CentiivRail(),
        Rail.ONCHAIN: BscUsdtRail(wallet_resolver=company_wallet),
        Rail.ADMIN_GRANT: AdminGrantRail(),
    }
    for rail in MANUAL_RAILS:
        rails[rail] = ManualRail(rail)
    return rails


def build_runtime(database_url: str = None, rails: Dict[Rail, RailAdapter] = None,
                  handlers: Dict[str, Handler] = None, cache: Optional[RedisClient] = None,
                  use_redis: bool = True, proof_root: str = None) -> Runtime:
    db_engine = make_engine(database_url)
    Base.metadata.create_all(bind=db_engine)
    session_factory = make_session_factory(db_engine)
    with session_factory() as session, session.begin():
        seed_catalog(session)

    if use_redis and cache is None:
        cache = RedisClient()
    lanes = UserLanes(cache if use_redis and settings.distributed_user_locks else None)

    dispatcher = OutboxDispatcher(session_factory, handlers if handlers is not None else default_handlers())
    proof_store = LocalProofStore(proof_root)
    engine = ReconciliationEngine(
        session_factory,
        rails if rails is not None else default_rails(session_factory),
        SideEffectEmitter(),
        dispatcher=dispatcher,
        lanes=lanes,
        proof_store=proof_store,
        on_catalog_change=cache.invalidate_share_info if cache is not None else None,
    )
    logger.info(f"Share ledger runtime ready with rails: {sorted(r.value for r in engine.rails)}")
    return Runtime(
        session_factory=session_factory,
        engine=engine,
        projector=ViewProjector(session_factory),
        dispatcher=dispatcher,
        proof_store=proof_store,
        cache=cache,
    )
