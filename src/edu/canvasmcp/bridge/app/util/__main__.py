import argparse
import asyncio
import logging

from sqlalchemy.ext.asyncio import create_async_engine

from edu.canvasmcp.bridge.crypto.hashing import SecretHasher, generate_api_key
from edu.canvasmcp.bridge.crypto.tokens import TokenCipher
from edu.canvasmcp.bridge.model import Base

logger = logging.getLogger(__name__)


async def genCryptoKey() -> None:
    print(TokenCipher.generate_key())


async def genApiKey(memory_cost: int, time_cost: int) -> None:
    api_key = generate_api_key()
    hasher = SecretHasher(memory_cost=memory_cost, time_cost=time_cost)
    hashed = await asyncio.to_thread(hasher.hash, api_key)
    print(f"api_key: {api_key}")
    print(f"api_key_hash: {hashed}")


async def initDatabase() -> None:
    from edu.canvasmcp.bridge.app.config import Settings

    settings = Settings()  # type: ignore
    engine = create_async_engine(settings.database_dsn)
    try:
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()
    print(f"Schema created on {engine.url.render_as_string(hide_password=True)}")


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="canvas-mcp-util", description="Canvas MCP bridge utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser(
        "gen-crypto", help="Generate an ENCRYPTION_KEY for Canvas tokens at rest"
    )
    gen_api_key = subparsers.add_parser(
        "gen-api-key", help="Generate an API key and its Argon2id hash"
    )
    gen_api_key.add_argument("--memory-cost", type=int, default=19456)
    gen_api_key.add_argument("--time-cost", type=int, default=2)
    _ = subparsers.add_parser(
        "init-db", help="Create missing tables in the configured database"
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-crypto":
        await genCryptoKey()
    elif command == "gen-api-key":
        await genApiKey(args["memory_cost"], args["time_cost"])
    elif command == "init-db":
        await initDatabase()


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
