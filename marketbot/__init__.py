"""Campus marketplace Telegram bot."""
