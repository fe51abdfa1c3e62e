"""Compute (Contabo) and DNS (Cloudflare) provider gateways."""
