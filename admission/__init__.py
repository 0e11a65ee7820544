"""Trade admission control for automated Solana token trading."""
