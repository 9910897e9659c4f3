from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    secret_key: str
    default_currency: str
    quote_validity_days: int
    document_dir: str


@dataclass
class EmailConfig:
    enabled: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender: str
    operator_cc: str


@dataclass
class PayFastConfig:
    sandbox_url: str
    live_url: str
    notify_url: str
    return_url: str
    cancel_url: str

    def process_url(self, mode: str) -> str:
        return self.live_url if mode == "live" else self.sandbox_url
