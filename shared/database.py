from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

def get_engine(database_url: str, echo: bool = False, **kwargs):
    return create_async_engine(database_url, echo=echo, future=True, **kwargs)

Base = declarative_base()

def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )

async def atomic_update_if(session, model, criteria, values: dict) -> bool:
    """
    Conditional update: apply `values` only to rows still matching `criteria`
    at write time. Returns True if at least one row changed.
    """
    stmt = (
        update(model)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0
