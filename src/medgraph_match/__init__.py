import argparse
import asyncio
import json
import logging

from .builder import EtlCache, MedicalGraphBuilder, RelationalSources, clear_graph
from .exceptions import (
    AgtypeDecodeError,
    GraphOperationError,
    MedGraphMatchError,
    NotFoundError,
    PartialFailure,
)
from .explorer import GraphExplorer
from .gateway import AgeGraphGateway, open_gateway
from .matching import MatchingService
from .retrieval import SemanticGraphRetrieval
from .settings import GraphSettings, process_config
from .signals import RelationshipSignalScorer

logger = logging.getLogger("medgraph_match")
logger.setLevel(logging.INFO)


async def run_command(command: str, settings: GraphSettings) -> dict:
    """Run one graph maintenance command and return a JSON-ready result."""
    async with open_gateway(settings) as gateway:
        explorer = GraphExplorer(gateway)
        if command == "ensure":
            await gateway.ensure_graph()
            return {"graph": settings.graph_name, "exists": True}
        if command == "clear":
            return {"graph": settings.graph_name, "cleared": await clear_graph(gateway)}
        if command == "stats":
            return (await explorer.get_graph_statistics()).model_dump()
        if command == "health":
            return (await explorer.check_health()).model_dump()
    raise ValueError(f"Unknown command: {command}")


def main():
    """Main entry point for the package."""
    parser = argparse.ArgumentParser(description="Medical case matching graph tools")
    parser.add_argument("command", choices=["ensure", "clear", "stats", "health"])
    parser.add_argument(
        "--db-url",
        default=None,
        help="PostgreSQL connection URL (postgresql://host:port)",
    )
    parser.add_argument("--username", default=None, help="Database username")
    parser.add_argument("--password", default=None, help="Database password")
    parser.add_argument("--database", default=None, help="Database name")
    parser.add_argument("--graph-name", default=None, help="AGE graph name")
    parser.add_argument(
        "--query-timeout", type=float, default=None, help="Statement timeout in seconds"
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    settings = process_config(args)
    result = asyncio.run(run_command(args.command, settings))
    print(json.dumps(result, indent=2))


__all__ = [
    "AgeGraphGateway",
    "AgtypeDecodeError",
    "EtlCache",
    "GraphExplorer",
    "GraphOperationError",
    "GraphSettings",
    "MatchingService",
    "MedGraphMatchError",
    "MedicalGraphBuilder",
    "NotFoundError",
    "PartialFailure",
    "RelationalSources",
    "RelationshipSignalScorer",
    "SemanticGraphRetrieval",
    "clear_graph",
    "main",
    "open_gateway",
    "process_config",
]
