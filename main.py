import uvicorn

from mail_gateway.config import load_config
from mail_gateway.gateway import MailGateway
from mail_gateway.logger import configure_logging
from mail_gateway.server import build_app


if __name__ == "__main__":
    config = load_config()
    configure_logging(config.log_level)
    # Create the gateway but don't start it yet - let uvicorn handle the event loop
    gateway = MailGateway(config)
    app = build_app(config, gateway)

    uvicorn.run(app, host=config.api.host, port=int(config.api.port))
