"""
x402 Distributor - Payment Split Distribution for NFT Holder Revenue Streams

Splits each settled x402 payment into a platform fee, a holder pool paid out
to every current holder of the stream's NFT collection, and a treasury
remainder, then moves the funds in one signed Solana transaction and keeps an
append-only ledger of every attempt. All amounts are integer lamports.

Core Components:
    - distribution_service.DistributionService: Orchestrates one payment from
      validation to ledger record, with idempotent replay and re-drive
    - split_calculator.SplitCalculator: Exact integer split of a payment
    - holder_directory.HolderDirectory: Current holders of a collection
    - funds_distributor.FundsDistributor: Signs, sends and confirms the
      transfer batch, and resends a stored batch unchanged
    - solana_rpc.SolanaRPCClient: JSON-RPC transport for the Solana cluster
    - webhook_dispatcher.DistributionWebhookDispatcher: Signed outbound
      payment notifications with retries and a dead-letter list

Infrastructure (for production deployments):
    - api: Flask blueprints for the webhook, stream management and reporting
    - storage: Pluggable ledger backends (JSON, PostgreSQL, Memory)
    - monitoring: Metrics, logging, and request context
    - scaling: Local and Redis locks for references, streams and signers

Modules are imported top-level with ``src`` on the path:

    from config import DistributorSettings
    from distribution_service import create_distribution_service

    service = create_distribution_service(DistributorSettings.from_env())
"""
