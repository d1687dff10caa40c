import uvicorn

from .app import create_app
from .settings import settings

app = create_app()


def run():
    uvicorn.run("bsauto.main:app", host="0.0.0.0", port=settings.PORT, proxy_headers=True, forwarded_allow_ips=settings.FORWARDED_ALLOW_IPS)


if __name__ == "__main__":
    run()
