"""
Root pytest configuration.
Sets the testing environment before any application module reads settings.
"""
import os

os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ.setdefault("ARCHIVE_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("BREVO_API_KEY", "test-brevo-key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
