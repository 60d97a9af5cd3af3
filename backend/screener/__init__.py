"""Art screener backend: session analysis pipeline and report delivery."""
