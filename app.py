from __future__ import annotations

import datetime as dt
import logging
import os
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import jwt
import dicttoxml
from flask import Flask, Response, current_app, jsonify, make_response, request
from flask_cors import CORS
from flask_mysqldb import MySQL
from werkzeug.exceptions import BadRequest, HTTPException, NotFound

from config import Config


mysql = MySQL()

ORDER_STATUSES = ("borrador", "pendiente", "completado", "cancelado")
NEW_ORDER_STATUSES = ("borrador", "pendiente")
DEFAULT_PAYMENT_METHOD = "Efectivo"

RECENT_SALES_VIEWS = {
	"7": "vw_ventas_7_dias",
	"15": "vw_ventas_15_dias",
	"30": "vw_ventas_30_dias",
}


def _parse_int(
	value: Any,
	field: str,
	*,
	minimum: Optional[int] = None,
	maximum: Optional[int] = None,
) -> int:
	if isinstance(value, bool):
		raise BadRequest(f"{field} debe ser un entero")
	if isinstance(value, float) and not value.is_integer():
		raise BadRequest(f"{field} debe ser un entero")
	try:
		parsed = int(value)
	except (TypeError, ValueError):
		raise BadRequest(f"{field} debe ser un entero")
	if minimum is not None and parsed < minimum:
		raise BadRequest(f"{field} debe ser >= {minimum}")
	if maximum is not None and parsed > maximum:
		raise BadRequest(f"{field} debe ser <= {maximum}")
	return parsed


def _parse_decimal(
	value: Any,
	field: str,
	*,
	minimum: Optional[Decimal] = None,
	places: int = 2,
) -> Decimal:
	"""Parse a money amount, rounded half-up to the DECIMAL(10,2) scale."""
	if isinstance(value, bool) or value is None:
		raise BadRequest(f"{field} debe ser un número")
	try:
		parsed = Decimal(str(value).strip())
		if not parsed.is_finite():
			raise BadRequest(f"{field} debe ser un número")
		parsed = parsed.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
	except (InvalidOperation, ValueError):
		raise BadRequest(f"{field} debe ser un número")
	if minimum is not None and parsed < minimum:
		raise BadRequest(f"{field} debe ser >= {minimum}")
	return parsed


def _parse_date(value: Any, field: str) -> dt.date:
	if not value or not isinstance(value, str):
		raise BadRequest(f"{field} debe ser una fecha (YYYY-MM-DD)")
	try:
		return dt.date.fromisoformat(value)
	except ValueError:
		pass
	try:
		return dt.datetime.fromisoformat(value).date()
	except ValueError:
		raise BadRequest(f"{field} debe ser una fecha (YYYY-MM-DD)")


def _parse_optional_date(value: Any, field: str) -> Optional[dt.date]:
	if value in (None, ""):
		return None
	return _parse_date(value, field)


def _parse_bool(value: Any, field: str) -> bool:
	if isinstance(value, bool):
		return value
	if value in (0, 1):
		return bool(value)
	if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0"}:
		return value.strip().lower() in {"true", "1"}
	raise BadRequest(f"{field} debe ser booleano")


def _optional_str(value: Any) -> Optional[str]:
	if value is None:
		return None
	text = str(value).strip()
	return text or None


def _required_str(body: Dict[str, Any], field: str) -> str:
	text = _optional_str(body.get(field))
	if not text:
		raise BadRequest(f"{field} es obligatorio")
	return text


def _json_body() -> Dict[str, Any]:
	body = request.get_json(silent=True)
	if body is None:
		return {}
	if not isinstance(body, dict):
		raise BadRequest("El cuerpo de la petición debe ser un objeto JSON")
	return body


def _get_format(*, strict: bool = True) -> str:
	fmt = (request.args.get("format") or "json").strip().lower()
	if fmt not in {"json", "xml"}:
		if not strict:
			return "json"
		raise BadRequest("format debe ser 'json' o 'xml'")
	return fmt


def _jsonable(value: Any) -> Any:
	if isinstance(value, dict):
		return {k: _jsonable(v) for k, v in value.items()}
	if isinstance(value, (list, tuple)):
		return [_jsonable(v) for v in value]
	if isinstance(value, Decimal):
		return float(value)
	if isinstance(value, (dt.date, dt.datetime)):
		return value.isoformat()
	if isinstance(value, dt.timedelta):
		return str(value)
	if isinstance(value, bytes):
		return value.decode("utf-8", errors="replace")
	return value


def _to_xml(payload: Any, root: str = "response") -> bytes:
	# dicttoxml wraps lists; make output predictable
	return dicttoxml.dicttoxml(payload, custom_root=root, attr_type=False)


def _render(payload: Any, status: int, root: str, fmt: str) -> Response:
	payload = _jsonable(payload)
	if fmt == "xml":
		resp = make_response(_to_xml(payload, root=root), status)
		resp.headers["Content-Type"] = "application/xml; charset=utf-8"
		return resp
	return make_response(jsonify(payload), status)


def api_response(payload: Any, status: int = 200, *, root: str = "response") -> Response:
	return _render(payload, status, root, _get_format())


def error_response(
	message: str,
	status: int,
	*,
	error: Optional[str] = None,
	details: Optional[Dict[str, Any]] = None,
) -> Response:
	payload: Dict[str, Any] = {"message": message, "status": status}
	if error:
		payload["error"] = error
	if details:
		payload["details"] = details
	# never raise from here: error handlers render through this path
	return _render(payload, status, "error", _get_format(strict=False))


def _generate_token(username: str, secret: str, *, expires_minutes: int = 60) -> str:
	now = dt.datetime.now(dt.timezone.utc)
	payload = {
		"sub": username,
		"iat": int(now.timestamp()),
		"exp": int((now + dt.timedelta(minutes=expires_minutes)).timestamp()),
	}
	return jwt.encode(payload, secret, algorithm="HS256")


def require_jwt(fn: Callable[..., Response]) -> Callable[..., Response]:
	"""Guard an API view with a bearer token when API_AUTH_REQUIRED is on."""

	@wraps(fn)
	def wrapper(*args: Any, **kwargs: Any) -> Response:
		if not current_app.config.get("API_AUTH_REQUIRED"):
			return fn(*args, **kwargs)
		header = request.headers.get("Authorization", "")
		if not header.startswith("Bearer "):
			return error_response("Falta el encabezado Authorization o es inválido", 401)
		token = header.split(" ", 1)[1].strip()
		try:
			jwt.decode(token, current_app.config["JWT_SECRET_KEY"], algorithms=["HS256"])
		except jwt.ExpiredSignatureError:
			return error_response("Token expirado", 401)
		except jwt.InvalidTokenError:
			return error_response("Token inválido", 401)
		return fn(*args, **kwargs)

	return wrapper


def _fetchone_dict(cursor) -> Optional[Dict[str, Any]]:
	row = cursor.fetchone()
	if row is None:
		return None
	if isinstance(row, dict):
		return row
	desc = [col[0] for col in cursor.description]
	return dict(zip(desc, row))


def _fetchall_dict(cursor) -> List[Dict[str, Any]]:
	rows = cursor.fetchall() or []
	if not rows:
		return []
	if isinstance(rows[0], dict):
		return list(rows)
	desc = [col[0] for col in cursor.description]
	return [dict(zip(desc, r)) for r in rows]


def _db() -> Tuple[Any, Any]:
	conn = mysql.connection
	cur = conn.cursor()
	return conn, cur


def _record_exists(cur, table: str, key: str, record_id: int) -> bool:
	cur.execute(f"SELECT {key} FROM {table} WHERE {key}=%s", (record_id,))
	return _fetchone_dict(cur) is not None


def _missing_after_update(cur, table: str, key: str, record_id: int) -> bool:
	# MySQL counts changed rows, so a no-op UPDATE also reports 0
	if cur.rowcount:
		return False
	return not _record_exists(cur, table, key, record_id)


def _handle_db_error(exc: Exception, message: str) -> Response:
	current_app.logger.exception("%s: %s", message, exc)
	return error_response(message, 500)


def wait_for_database(app: Flask) -> bool:
	"""Block until MySQL answers ``SELECT 1`` or the retries run out.

	Uses ``DB_CONNECT_RETRIES`` attempts spaced ``DB_CONNECT_DELAY`` seconds
	apart. Returns True once connected, False if every attempt failed.
	"""
	retries = max(1, int(app.config.get("DB_CONNECT_RETRIES", 1)))
	delay = float(app.config.get("DB_CONNECT_DELAY", 0))
	for attempt in range(1, retries + 1):
		try:
			with app.app_context():
				cur = mysql.connection.cursor()
				cur.execute("SELECT 1")
				cur.close()
		except Exception as exc:
			app.logger.warning("Database connection attempt %s/%s failed: %s", attempt, retries, exc)
			if attempt < retries:
				time.sleep(delay)
			continue
		app.logger.info("Database connected successfully")
		return True
	app.logger.error("Could not connect to the database after %s attempts", retries)
	return False


# -------------------------
# Payload parsing
# -------------------------
def _parse_product(body: Dict[str, Any]) -> Dict[str, Any]:
	return {
		"nombre_producto": _required_str(body, "nombre_producto"),
		"descripcion": _optional_str(body.get("descripcion")),
		"precio": _parse_decimal(body.get("precio"), "precio", minimum=Decimal("0")),
		"tamano": _optional_str(body.get("tamano")),
		"imagen_url": _optional_str(body.get("imagen_url")),
		"id_categoria": _parse_int(body.get("id_categoria"), "id_categoria", minimum=1),
	}


def _parse_client(body: Dict[str, Any]) -> Dict[str, Any]:
	return {
		"nombre_cliente": _required_str(body, "nombre_cliente"),
		"telefono": _optional_str(body.get("telefono")),
		"direccion": _optional_str(body.get("direccion")),
		"notas": _optional_str(body.get("notas")),
	}


def _parse_line_items(value: Any) -> List[Dict[str, int]]:
	if not isinstance(value, list) or not value:
		raise BadRequest("productos debe ser una lista no vacía")
	items: List[Dict[str, int]] = []
	for index, raw in enumerate(value):
		if not isinstance(raw, dict):
			raise BadRequest(f"productos[{index}] debe ser un objeto")
		items.append(
			{
				"id_producto": _parse_int(raw.get("id_producto"), f"productos[{index}].id_producto", minimum=1),
				"cantidad": _parse_int(raw.get("cantidad"), f"productos[{index}].cantidad", minimum=1),
			}
		)
	return items


def _parse_order(
	body: Dict[str, Any],
	*,
	allowed_statuses: Iterable[str],
	default_status: Optional[str],
) -> Dict[str, Any]:
	"""Validate an order payload. Client-sent prices are ignored."""
	allowed = tuple(allowed_statuses)
	estado = _optional_str(body.get("estado")) or default_status
	if estado is not None and estado not in allowed:
		raise BadRequest(f"estado debe ser uno de: {', '.join(allowed)}")
	costo_envio = body.get("costo_envio")
	return {
		"id_cliente": _parse_int(body.get("id_cliente"), "id_cliente", minimum=1),
		"id_canal": _parse_int(body.get("id_canal"), "id_canal", minimum=1),
		"fecha_pedido": _parse_date(body.get("fecha_pedido"), "fecha_pedido"),
		"fecha_limite": _parse_optional_date(body.get("fecha_limite"), "fecha_limite"),
		"costo_envio": _parse_decimal(
			0 if costo_envio in (None, "") else costo_envio, "costo_envio", minimum=Decimal("0")
		),
		"requiere_envio": _parse_bool(body.get("requiere_envio") or False, "requiere_envio"),
		"direccion_envio": _optional_str(body.get("direccion_envio")),
		"notas": _optional_str(body.get("notas")),
		"metodo_pago": _optional_str(body.get("metodo_pago")) or DEFAULT_PAYMENT_METHOD,
		"estado": estado,
		"productos": _parse_line_items(body.get("productos")),
	}


# -------------------------
# Order transaction steps
# -------------------------
def _insert_line_items(
	cur,
	pedido_id: int,
	items: List[Dict[str, int]],
	captured_prices: Optional[Dict[int, Decimal]] = None,
) -> Decimal:
	"""Insert line items at the product's live price and return their subtotal.

	Products listed in ``captured_prices`` keep that price instead of the live
	one. Raises LookupError when a product does not exist.
	"""
	captured_prices = captured_prices or {}
	subtotal = Decimal("0")
	for item in items:
		product_id = item["id_producto"]
		price = captured_prices.get(product_id)
		if price is None:
			cur.execute("SELECT precio FROM PRODUCTOS WHERE id_producto=%s", (product_id,))
			row = _fetchone_dict(cur)
			if row is None:
				raise LookupError(f"Producto {product_id} no encontrado")
			price = Decimal(str(row["precio"]))
		cur.execute(
			"INSERT INTO DETALLE_PEDIDOS (id_pedido, id_producto, cantidad, precio_unitario) VALUES (%s,%s,%s,%s)",
			(pedido_id, product_id, item["cantidad"], price),
		)
		subtotal += price * item["cantidad"]
	return subtotal


def create_order(cur, order: Dict[str, Any]) -> Tuple[int, Decimal]:
	"""Run the order creation statements; the caller commits or rolls back."""
	cur.execute(
		"""
		INSERT INTO PEDIDOS (
			id_cliente, id_canal, fecha_pedido, fecha_limite, costo_envio, requiere_envio,
			direccion_envio, notas, metodo_pago, estado, subtotal
		)
		VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,0)
		""",
		(
			order["id_cliente"],
			order["id_canal"],
			order["fecha_pedido"],
			order["fecha_limite"],
			order["costo_envio"],
			order["requiere_envio"],
			order["direccion_envio"],
			order["notas"],
			order["metodo_pago"],
			order["estado"],
		),
	)
	pedido_id = cur.lastrowid
	subtotal = _insert_line_items(cur, pedido_id, order["productos"])
	cur.execute("UPDATE PEDIDOS SET subtotal=%s WHERE id_pedido=%s", (subtotal, pedido_id))
	return pedido_id, subtotal


def update_order(cur, pedido_id: int, order: Dict[str, Any]) -> Decimal:
	"""Rewrite an existing order's header and line items.

	Products that were already on the order keep the unit price captured when
	they were first sold; new products are priced at their current price.
	"""
	cur.execute(
		"SELECT id_producto, precio_unitario FROM DETALLE_PEDIDOS WHERE id_pedido=%s ORDER BY id_detalle",
		(pedido_id,),
	)
	captured: Dict[int, Decimal] = {}
	for row in _fetchall_dict(cur):
		captured.setdefault(int(row["id_producto"]), Decimal(str(row["precio_unitario"])))

	cur.execute(
		"""
		UPDATE PEDIDOS
		SET id_cliente=%s, id_canal=%s, fecha_pedido=%s, fecha_limite=%s, costo_envio=%s,
			requiere_envio=%s, direccion_envio=%s, notas=%s, metodo_pago=%s,
			estado=COALESCE(%s, estado), ultima_edicion=NOW()
		WHERE id_pedido=%s
		""",
		(
			order["id_cliente"],
			order["id_canal"],
			order["fecha_pedido"],
			order["fecha_limite"],
			order["costo_envio"],
			order["requiere_envio"],
			order["direccion_envio"],
			order["notas"],
			order["metodo_pago"],
			order["estado"],
			pedido_id,
		),
	)
	cur.execute("DELETE FROM DETALLE_PEDIDOS WHERE id_pedido=%s", (pedido_id,))
	subtotal = _insert_line_items(cur, pedido_id, order["productos"], captured)
	cur.execute("UPDATE PEDIDOS SET subtotal=%s WHERE id_pedido=%s", (subtotal, pedido_id))
	return subtotal


_ORDER_SELECT = """
	SELECT p.*, c.nombre_cliente, cv.nombre_canal
	FROM PEDIDOS p
	JOIN CLIENTES c ON p.id_cliente = c.id_cliente
	JOIN CANALES_VENTA cv ON p.id_canal = cv.id_canal
"""

_MONTHLY_SALES_FILTER = "MONTH(p.fecha_pedido)=%s AND YEAR(p.fecha_pedido)=%s AND p.estado <> 'cancelado'"


def _log_level(value: Any) -> int:
	# getLevelName maps known names to ints and anything else to a string
	level = logging.getLevelName(str(value or "INFO").strip().upper())
	return level if isinstance(level, int) else logging.INFO


def _as_bool(value: str) -> bool:
	return value.strip().lower() in {"1", "true", "yes", "on"}


_ENV_OVERRIDES: Tuple[Tuple[str, Callable[[str], Any]], ...] = (
	("MYSQL_USER", str),
	("MYSQL_PASSWORD", str),
	("MYSQL_HOST", str),
	("MYSQL_DB", str),
	("MYSQL_PORT", int),
	("CORS_ORIGINS", str),
	("LOG_LEVEL", str),
	("DB_CONNECT_RETRIES", int),
	("DB_CONNECT_DELAY", float),
	("API_AUTH_REQUIRED", _as_bool),
	("JWT_SECRET_KEY", str),
	("API_USERNAME", str),
	("API_PASSWORD", str),
)


def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
	app = Flask(__name__)
	app.config.from_object(Config)

	# Ensure env vars always take precedence (Config class attributes are evaluated at import time).
	for name, cast in _ENV_OVERRIDES:
		value = os.getenv(name)
		if value is not None:
			app.config[name] = cast(value)
	if overrides:
		app.config.update(overrides)

	# flask-mysqldb reads rows through this cursor class
	app.config.setdefault("MYSQL_CURSORCLASS", "DictCursor")
	app.logger.setLevel(_log_level(app.config.get("LOG_LEVEL")))

	mysql.init_app(app)
	origins = str(app.config.get("CORS_ORIGINS") or "*")
	CORS(app, origins="*" if origins == "*" else [o.strip() for o in origins.split(",") if o.strip()])

	@app.before_request
	def _validate_format() -> None:
		_get_format()

	@app.get("/")
	def index() -> Response:
		return make_response("MiniStore API is running", 200, {"Content-Type": "text/plain; charset=utf-8"})

	@app.get("/health")
	def health() -> Response:
		return api_response({"status": "ok"})

	@app.post("/auth/login")
	def login() -> Response:
		body = _json_body()
		username = body.get("username")
		password = body.get("password")
		if username != app.config.get("API_USERNAME") or password != app.config.get("API_PASSWORD"):
			return error_response("Credenciales inválidas", 401)
		token = _generate_token(str(username), app.config["JWT_SECRET_KEY"], expires_minutes=60)
		return api_response({"access_token": token, "token_type": "Bearer", "expires_in": 3600})

	# -------------------------
	# Productos
	# -------------------------
	@app.get("/api/productos")
	@require_jwt
	def list_productos() -> Response:
		categoria = request.args.get("categoria")
		sql = """
			SELECT p.*, c.nombre_categoria
			FROM PRODUCTOS p
			JOIN CATEGORIAS c ON p.id_categoria = c.id_categoria
			WHERE p.activo = TRUE
		"""
		params: List[Any] = []
		if categoria:
			sql += " AND p.id_categoria = %s"
			params.append(_parse_int(categoria, "categoria", minimum=1))
		sql += " ORDER BY p.nombre_producto ASC"
		try:
			_, cur = _db()
			cur.execute(sql, tuple(params))
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener productos")

	@app.get("/api/productos/<int:producto_id>")
	@require_jwt
	def get_producto(producto_id: int) -> Response:
		try:
			_, cur = _db()
			cur.execute(
				"""
				SELECT p.*, c.nombre_categoria
				FROM PRODUCTOS p
				LEFT JOIN CATEGORIAS c ON p.id_categoria = c.id_categoria
				WHERE p.id_producto=%s
				""",
				(producto_id,),
			)
			row = _fetchone_dict(cur)
			if not row:
				return error_response("Producto no encontrado", 404)
			return api_response(row)
		except Exception as e:
			return _handle_db_error(e, "Error al obtener el producto")

	@app.post("/api/productos")
	@require_jwt
	def create_producto() -> Response:
		producto = _parse_product(_json_body())
		try:
			conn, cur = _db()
			cur.execute(
				"""
				INSERT INTO PRODUCTOS (nombre_producto, descripcion, precio, tamano, imagen_url, id_categoria)
				VALUES (%s,%s,%s,%s,%s,%s)
				""",
				(
					producto["nombre_producto"],
					producto["descripcion"],
					producto["precio"],
					producto["tamano"],
					producto["imagen_url"],
					producto["id_categoria"],
				),
			)
			conn.commit()
			new_id = cur.lastrowid
			resp = api_response({"message": "Producto creado", "id": new_id, **producto}, status=201)
			resp.headers["Location"] = f"/api/productos/{new_id}" + _format_suffix()
			return resp
		except Exception as e:
			return _handle_db_error(e, "Error al crear el producto")

	@app.put("/api/productos/<int:producto_id>")
	@require_jwt
	def update_producto(producto_id: int) -> Response:
		producto = _parse_product(_json_body())
		try:
			conn, cur = _db()
			cur.execute(
				"""
				UPDATE PRODUCTOS
				SET nombre_producto=%s, descripcion=%s, precio=%s, tamano=%s, imagen_url=%s, id_categoria=%s
				WHERE id_producto=%s
				""",
				(
					producto["nombre_producto"],
					producto["descripcion"],
					producto["precio"],
					producto["tamano"],
					producto["imagen_url"],
					producto["id_categoria"],
					producto_id,
				),
			)
			conn.commit()
			if _missing_after_update(cur, "PRODUCTOS", "id_producto", producto_id):
				return error_response("Producto no encontrado", 404)
			return api_response({"message": "Producto actualizado", "id": producto_id})
		except Exception as e:
			return _handle_db_error(e, "Error al actualizar el producto")

	@app.delete("/api/productos/<int:producto_id>")
	@require_jwt
	def delete_producto(producto_id: int) -> Response:
		try:
			conn, cur = _db()
			cur.execute("UPDATE PRODUCTOS SET activo = FALSE WHERE id_producto=%s", (producto_id,))
			conn.commit()
			if _missing_after_update(cur, "PRODUCTOS", "id_producto", producto_id):
				return error_response("Producto no encontrado", 404)
			return api_response({"message": "Producto eliminado", "id": producto_id})
		except Exception as e:
			return _handle_db_error(e, "Error al eliminar el producto")

	# -------------------------
	# Pedidos
	# -------------------------
	@app.get("/api/pedidos")
	@require_jwt
	def list_pedidos() -> Response:
		estado = _optional_str(request.args.get("estado"))
		mes = request.args.get("mes")
		anio = request.args.get("anio")

		where: List[str] = []
		params: List[Any] = []
		if estado:
			where.append("p.estado = %s")
			params.append(estado)
		if mes:
			where.append("MONTH(p.fecha_pedido) = %s")
			params.append(_parse_int(mes, "mes", minimum=1, maximum=12))
		if anio:
			where.append("YEAR(p.fecha_pedido) = %s")
			params.append(_parse_int(anio, "anio", minimum=1))

		sql = _ORDER_SELECT
		if where:
			sql += " WHERE " + " AND ".join(where)
		sql += " ORDER BY p.fecha_pedido DESC, p.id_pedido DESC"
		try:
			_, cur = _db()
			cur.execute(sql, tuple(params))
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener pedidos")

	@app.get("/api/pedidos/<int:pedido_id>")
	@require_jwt
	def get_pedido(pedido_id: int) -> Response:
		try:
			_, cur = _db()
			cur.execute(
				"""
				SELECT p.*, c.nombre_cliente, c.telefono, c.direccion, cv.nombre_canal
				FROM PEDIDOS p
				JOIN CLIENTES c ON p.id_cliente = c.id_cliente
				JOIN CANALES_VENTA cv ON p.id_canal = cv.id_canal
				WHERE p.id_pedido=%s
				""",
				(pedido_id,),
			)
			order = _fetchone_dict(cur)
			if not order:
				return error_response("Pedido no encontrado", 404)
			cur.execute(
				"""
				SELECT dp.id_detalle, dp.id_pedido, dp.id_producto, dp.cantidad, dp.precio_unitario,
					pr.nombre_producto
				FROM DETALLE_PEDIDOS dp
				JOIN PRODUCTOS pr ON dp.id_producto = pr.id_producto
				WHERE dp.id_pedido=%s
				ORDER BY dp.id_detalle
				""",
				(pedido_id,),
			)
			order["detalles"] = _fetchall_dict(cur)
			return api_response(order)
		except Exception as e:
			return _handle_db_error(e, "Error al obtener el pedido")

	@app.post("/api/pedidos")
	@require_jwt
	def create_pedido() -> Response:
		order = _parse_order(_json_body(), allowed_statuses=NEW_ORDER_STATUSES, default_status="pendiente")
		conn, cur = _db()
		try:
			pedido_id, subtotal = create_order(cur, order)
			conn.commit()
		except Exception as e:
			conn.rollback()
			app.logger.exception("Order creation rolled back: %s", e)
			return error_response("Error al crear el pedido", 500, error=str(e))
		app.logger.info("Created order %s with %s line items", pedido_id, len(order["productos"]))
		resp = api_response(
			{"message": "Pedido creado exitosamente", "id_pedido": pedido_id, "subtotal": subtotal},
			status=201,
		)
		resp.headers["Location"] = f"/api/pedidos/{pedido_id}" + _format_suffix()
		return resp

	@app.put("/api/pedidos/<int:pedido_id>")
	@require_jwt
	def update_pedido(pedido_id: int) -> Response:
		order = _parse_order(_json_body(), allowed_statuses=ORDER_STATUSES, default_status=None)
		conn, cur = _db()
		try:
			if not _record_exists(cur, "PEDIDOS", "id_pedido", pedido_id):
				conn.rollback()
				return error_response("Pedido no encontrado", 404)
			subtotal = update_order(cur, pedido_id, order)
			conn.commit()
		except Exception as e:
			conn.rollback()
			app.logger.exception("Order %s update rolled back: %s", pedido_id, e)
			return error_response("Error al actualizar el pedido", 500, error=str(e))
		app.logger.info("Updated order %s", pedido_id)
		return api_response({"message": "Pedido actualizado", "id_pedido": pedido_id, "subtotal": subtotal})

	@app.patch("/api/pedidos/<int:pedido_id>/estado")
	@require_jwt
	def update_estado_pedido(pedido_id: int) -> Response:
		estado = _required_str(_json_body(), "estado")
		try:
			conn, cur = _db()
			cur.execute("UPDATE PEDIDOS SET estado=%s WHERE id_pedido=%s", (estado, pedido_id))
			conn.commit()
			if _missing_after_update(cur, "PEDIDOS", "id_pedido", pedido_id):
				return error_response("Pedido no encontrado", 404)
			app.logger.info("Order %s status set to %s", pedido_id, estado)
			return api_response({"message": "Estado actualizado", "id_pedido": pedido_id, "estado": estado})
		except Exception as e:
			return _handle_db_error(e, "Error al actualizar estado")

	# -------------------------
	# Clientes
	# -------------------------
	@app.get("/api/clientes")
	@require_jwt
	def list_clientes() -> Response:
		try:
			_, cur = _db()
			cur.execute("SELECT * FROM CLIENTES WHERE activo = TRUE ORDER BY nombre_cliente")
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener clientes")

	@app.get("/api/clientes/<int:cliente_id>")
	@require_jwt
	def get_cliente(cliente_id: int) -> Response:
		try:
			_, cur = _db()
			cur.execute("SELECT * FROM CLIENTES WHERE id_cliente=%s", (cliente_id,))
			row = _fetchone_dict(cur)
			if not row:
				return error_response("Cliente no encontrado", 404)
			return api_response(row)
		except Exception as e:
			return _handle_db_error(e, "Error al obtener el cliente")

	@app.post("/api/clientes")
	@require_jwt
	def create_cliente() -> Response:
		cliente = _parse_client(_json_body())
		try:
			conn, cur = _db()
			cur.execute(
				"INSERT INTO CLIENTES (nombre_cliente, telefono, direccion, notas) VALUES (%s,%s,%s,%s)",
				(cliente["nombre_cliente"], cliente["telefono"], cliente["direccion"], cliente["notas"]),
			)
			conn.commit()
			new_id = cur.lastrowid
			resp = api_response({"message": "Cliente creado", "id": new_id, **cliente}, status=201)
			resp.headers["Location"] = f"/api/clientes/{new_id}" + _format_suffix()
			return resp
		except Exception as e:
			return _handle_db_error(e, "Error al crear cliente")

	@app.put("/api/clientes/<int:cliente_id>")
	@require_jwt
	def update_cliente(cliente_id: int) -> Response:
		cliente = _parse_client(_json_body())
		try:
			conn, cur = _db()
			cur.execute(
				"UPDATE CLIENTES SET nombre_cliente=%s, telefono=%s, direccion=%s, notas=%s WHERE id_cliente=%s",
				(cliente["nombre_cliente"], cliente["telefono"], cliente["direccion"], cliente["notas"], cliente_id),
			)
			conn.commit()
			if _missing_after_update(cur, "CLIENTES", "id_cliente", cliente_id):
				return error_response("Cliente no encontrado", 404)
			return api_response({"message": "Cliente actualizado", "id": cliente_id})
		except Exception as e:
			return _handle_db_error(e, "Error al actualizar cliente")

	@app.delete("/api/clientes/<int:cliente_id>")
	@require_jwt
	def delete_cliente(cliente_id: int) -> Response:
		try:
			conn, cur = _db()
			cur.execute("UPDATE CLIENTES SET activo = FALSE WHERE id_cliente=%s", (cliente_id,))
			conn.commit()
			if _missing_after_update(cur, "CLIENTES", "id_cliente", cliente_id):
				return error_response("Cliente no encontrado", 404)
			return api_response({"message": "Cliente eliminado", "id": cliente_id})
		except Exception as e:
			return _handle_db_error(e, "Error al eliminar cliente")

	# -------------------------
	# Common lookups (form data)
	# -------------------------
	@app.get("/api/common/categorias")
	@require_jwt
	def common_categorias() -> Response:
		try:
			_, cur = _db()
			cur.execute("SELECT * FROM CATEGORIAS WHERE activo = TRUE ORDER BY nombre_categoria")
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener categorías")

	@app.get("/api/common/clientes")
	@require_jwt
	def common_clientes() -> Response:
		try:
			_, cur = _db()
			cur.execute("SELECT * FROM CLIENTES WHERE activo = TRUE ORDER BY nombre_cliente")
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener clientes")

	@app.get("/api/common/canales")
	@require_jwt
	def common_canales() -> Response:
		try:
			_, cur = _db()
			cur.execute("SELECT * FROM CANALES_VENTA WHERE activo = TRUE ORDER BY nombre_canal")
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener canales")

	# -------------------------
	# Reportes (views)
	# -------------------------
	@app.get("/api/reportes/ganancias")
	@require_jwt
	def resumen_ganancias() -> Response:
		try:
			_, cur = _db()
			cur.execute("SELECT * FROM vw_resumen_ganancias LIMIT 12")
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener resumen de ganancias")

	@app.get("/api/reportes/productos-top")
	@require_jwt
	def productos_mas_vendidos() -> Response:
		try:
			_, cur = _db()
			cur.execute("SELECT * FROM vw_productos_mas_vendidos LIMIT 10")
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener productos más vendidos")

	@app.get("/api/reportes/ventas-recientes")
	@require_jwt
	def ventas_recientes() -> Response:
		view = RECENT_SALES_VIEWS.get(request.args.get("periodo", "7"), RECENT_SALES_VIEWS["7"])
		try:
			_, cur = _db()
			cur.execute(f"SELECT * FROM {view}")
			return api_response(_fetchall_dict(cur))
		except Exception as e:
			return _handle_db_error(e, "Error al obtener ventas recientes")

	@app.get("/api/reportes/ventas-mensuales")
	@require_jwt
	def ventas_mensuales() -> Response:
		today = dt.date.today()
		mes = _parse_int(request.args.get("mes") or today.month, "mes", minimum=1, maximum=12)
		anio = _parse_int(request.args.get("anio") or today.year, "anio", minimum=1)
		try:
			_, cur = _db()
			cur.execute(
				f"""
				SELECT p.metodo_pago, SUM(p.total) AS total_monto, COUNT(*) AS cantidad_pedidos
				FROM PEDIDOS p
				WHERE {_MONTHLY_SALES_FILTER}
				GROUP BY p.metodo_pago
				ORDER BY total_monto DESC
				""",
				(mes, anio),
			)
			resumen = _fetchall_dict(cur)
			cur.execute(
				f"""
				SELECT p.id_pedido, p.fecha_pedido, c.nombre_cliente, p.metodo_pago, p.estado, p.total,
					GROUP_CONCAT(
						CONCAT(dp.cantidad, 'x ', pr.nombre_producto)
						ORDER BY dp.id_detalle SEPARATOR ', '
					) AS productos_resumen
				FROM PEDIDOS p
				JOIN CLIENTES c ON p.id_cliente = c.id_cliente
				LEFT JOIN DETALLE_PEDIDOS dp ON dp.id_pedido = p.id_pedido
				LEFT JOIN PRODUCTOS pr ON dp.id_producto = pr.id_producto
				WHERE {_MONTHLY_SALES_FILTER}
				GROUP BY p.id_pedido, p.fecha_pedido, c.nombre_cliente, p.metodo_pago, p.estado, p.total
				ORDER BY p.fecha_pedido DESC, p.id_pedido DESC
				""",
				(mes, anio),
			)
			pedidos = _fetchall_dict(cur)
			return api_response({"mes": mes, "anio": anio, "resumen": resumen, "pedidos": pedidos})
		except Exception as e:
			return _handle_db_error(e, "Error al obtener ventas mensuales")

	@app.get("/api/reportes/stats")
	@require_jwt
	def dashboard_stats() -> Response:
		try:
			_, cur = _db()
			cur.execute(
				"""
				SELECT COALESCE(SUM(total), 0) AS total, COUNT(*) AS count
				FROM PEDIDOS
				WHERE DATE(fecha_pedido) = CURDATE() AND estado <> 'cancelado'
				"""
			)
			today = _fetchone_dict(cur) or {}
			cur.execute("SELECT COUNT(*) AS count FROM PEDIDOS WHERE estado = 'pendiente'")
			pending = _fetchone_dict(cur) or {}
			cur.execute("SELECT COUNT(*) AS count FROM PRODUCTOS WHERE activo = TRUE")
			products = _fetchone_dict(cur) or {}
			cur.execute("SELECT COALESCE(SUM(total), 0) AS total FROM PEDIDOS WHERE estado <> 'cancelado'")
			historic = _fetchone_dict(cur) or {}
			return api_response(
				{
					"ventasHoy": today.get("total") or 0,
					"pedidosHoy": today.get("count") or 0,
					"pedidosPendientes": pending.get("count") or 0,
					"totalProductos": products.get("count") or 0,
					"totalHistorico": historic.get("total") or 0,
				}
			)
		except Exception as e:
			return _handle_db_error(e, "Error al obtener estadísticas del dashboard")

	# -------------------------
	# Consistent JSON/XML errors
	# -------------------------
	@app.errorhandler(BadRequest)
	def _bad_request(err: BadRequest):
		return error_response(str(err.description or "Petición inválida"), 400)

	@app.errorhandler(NotFound)
	def _not_found(err: NotFound):
		return error_response("Recurso no encontrado", 404)

	@app.errorhandler(HTTPException)
	def _http_error(err: HTTPException):
		return error_response(str(err.description or err.name), err.code or 500)

	@app.errorhandler(Exception)
	def _unhandled(err: Exception):
		app.logger.exception("Unhandled error: %s", err)
		return error_response("Error interno del servidor", 500)

	return app


def _format_suffix() -> str:
	fmt = request.args.get("format")
	if fmt:
		return f"?format={fmt}"
	return ""


app = create_app()


if __name__ == "__main__":
	wait_for_database(app)
	port = int(os.getenv("PORT", 3000))
	app.run(host="0.0.0.0", port=port, debug=os.getenv("FLASK_DEBUG") == "1")
