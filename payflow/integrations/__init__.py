"""Gateway, webhook verification/dispatch and outbound delivery."""
