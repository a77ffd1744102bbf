from .otp_fetcher import OtpFetcher, from_env

__all__ = ["OtpFetcher", "from_env"]
