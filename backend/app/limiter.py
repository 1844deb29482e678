"""
Modulo de limitacion de tasa de peticiones (Rate Limiting).

Este modulo configura un "rate limiter" que restringe cuantas peticiones
puede hacer un mismo cliente en un periodo de tiempo. Sin el, un solo
usuario (o un bot) podria encolar cientos de videos y saturar ffmpeg,
el disco scratch y el bucket de S3.

Usamos SlowAPI, un wrapper de la libreria "limits" para FastAPI. Si el
cliente excede el limite (ej: "30/minute"), SlowAPI responde HTTP 429
(Too Many Requests) sin ejecutar el endpoint.

A quien identificamos como "cliente"?
-------------------------------------
Todas las rutas (menos /api/health) requieren un bearer token, asi que
el identificador natural es el USUARIO (claim `sub` del JWT), no la IP:
varios usuarios detras del mismo NAT no deben compartir un limite.

Aqui el token se decodifica SIN verificar la firma: solo lo usamos como
clave de conteo. La verificacion real la hace app.security antes de
ejecutar el endpoint; un token falso igual termina en 401. Si no hay
token (o no se puede leer), caemos a la IP.

Patron Singleton implicito: UNA instancia global de Limiter compartida
por todos los archivos de rutas.
"""

import jwt
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request


def user_or_ip(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            claims = {}
        if claims.get("sub"):
            return f"user:{claims['sub']}"
    return get_remote_address(request)


# Por defecto SlowAPI guarda los contadores en memoria. Con varias
# instancias se usaria Redis:
#   Limiter(key_func=user_or_ip, storage_uri="redis://localhost:6379")
limiter = Limiter(key_func=user_or_ip)
