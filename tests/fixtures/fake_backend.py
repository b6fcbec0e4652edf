"""
In-process fake of the escrow backend REST contract

Served with aiohttp.test_utils.TestServer so the real aiohttp client code path
is exercised end to end. State lives in plain dicts that tests seed and inspect.
"""

import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from aiohttp import web

SENDER_ACTIONS = [
    "FUND_ESCROW", "MARK_DELIVERED", "CLIENT_APPROVE", "CLIENT_REJECT", "CHECK_DEADLINE",
    "DECIDE_PROOF", "REQUEST_ADVISOR_REVIEW", "ISSUE_EXTERNAL_TOKEN", "REVOKE_EXTERNAL_TOKEN",
]
OPS_ACTIONS = [
    "DECIDE_PROOF", "EXECUTE_PAYMENT", "CHECK_DEADLINE", "ISSUE_EXTERNAL_TOKEN",
    "REVOKE_EXTERNAL_TOKEN", "REQUEST_ADVISOR_REVIEW",
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _error(status: int, message: str, code: Optional[str] = None) -> web.Response:
    body: Dict[str, Any] = {"error": {"message": message}}
    if code:
        body["error"]["code"] = code
    return web.json_response(body, status=status)


class FakeBackend:
    """Escrow backend double with just enough behaviour for client tests"""

    def __init__(self, auth_token: str = "session-token-1"):
        self.auth_token = auth_token
        self.base_url = ""
        self.escrows: Dict[str, Dict[str, Any]] = {}
        self.milestones: Dict[str, List[Dict[str, Any]]] = {}
        self.proofs: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, Dict[str, Any]] = {}
        self.viewer_actions: Dict[str, List[str]] = {"sender": list(SENDER_ACTIONS), "admin": list(OPS_ACTIONS)}
        self.settle_after_reads = 2
        self.requests: List[Dict[str, Any]] = []
        self.fail_next: Dict[str, List[int]] = {}
        self.idempotency_keys: Dict[str, str] = {}
        self._ids = itertools.count(100)
        self.app = self._build_app()

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def next_id(self) -> str:
        return str(next(self._ids))

    def seed_escrow(self, escrow_id: str = "42", status: str = "FUNDED", amount_total: str = "1000.00",
                    currency: str = "USD", milestones: int = 2, beneficiary: bool = True) -> Dict[str, Any]:
        escrow = {
            "id": escrow_id,
            "status": status,
            "amount_total": amount_total,
            "currency": currency,
            "payment_mode": "MILESTONE",
        }
        if beneficiary:
            escrow["beneficiary_profile_id"] = "bp-7"
        else:
            escrow["provider_user_id"] = "u-provider"
        self.escrows[escrow_id] = escrow
        share = f"{float(amount_total) / max(milestones, 1):.2f}"
        self.milestones[escrow_id] = [
            {
                "id": f"m-{escrow_id}-{idx}",
                "escrow_id": escrow_id,
                "sequence_index": idx,
                "amount": share,
                "currency": currency,
                "status": "WAITING",
                "label": f"Milestone {idx}",
            }
            for idx in range(1, milestones + 1)
        ]
        return escrow

    def seed_proof(self, escrow_id: str = "42", milestone_idx: int = 1, status: str = "PENDING") -> Dict[str, Any]:
        proof_id = f"p-{self.next_id()}"
        milestone = self._milestone(escrow_id, milestone_idx)
        proof = {
            "id": proof_id,
            "escrow_id": escrow_id,
            "milestone_id": milestone["id"] if milestone else None,
            "milestone_idx": milestone_idx,
            "status": status,
            "created_at": _iso(_now()),
        }
        self.proofs[proof_id] = proof
        if milestone and status == "PENDING":
            milestone["status"] = "PENDING_REVIEW"
        return proof

    def seed_payment(self, escrow_id: str = "42", amount: str = "500.00", status: str = "PENDING") -> Dict[str, Any]:
        payment_id = f"pay-{self.next_id()}"
        payment = {
            "id": payment_id,
            "escrow_id": escrow_id,
            "amount": amount,
            "currency": self.escrows[escrow_id]["currency"],
            "status": status,
            "idempotency_key": None,
            "_reads_since_sent": 0,
        }
        self.payments[payment_id] = payment
        return payment

    def calls(self, method: str, path_prefix: str) -> List[Dict[str, Any]]:
        return [r for r in self.requests if r["method"] == method and r["path"].startswith(path_prefix)]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _milestone(self, escrow_id: str, idx: int) -> Optional[Dict[str, Any]]:
        for milestone in self.milestones.get(escrow_id, []):
            if milestone["sequence_index"] == idx:
                return milestone
        return None

    def _public(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in record.items() if not k.startswith("_")}

    def _token_view(self, token: Dict[str, Any]) -> Dict[str, Any]:
        self._refresh_token(token)
        return {k: v for k, v in token.items() if k != "secret" and not k.startswith("_")}

    def _refresh_token(self, token: Dict[str, Any]):
        if token["status"] == "ACTIVE" and datetime.fromisoformat(token["expires_at"]) <= _now():
            token["status"] = "EXPIRED"

    def _summary(self, escrow_id: str, viewer: str) -> Dict[str, Any]:
        milestones = self.milestones.get(escrow_id, [])
        submittable = next((m for m in milestones if m["status"] in ("WAITING", "REJECTED")), None)
        return {
            "escrow": self.escrows[escrow_id],
            "milestones": milestones,
            "proofs": [self._public(p) for p in self.proofs.values() if p["escrow_id"] == escrow_id],
            "payments": [self._public(p) for p in self.payments.values() if p["escrow_id"] == escrow_id],
            "viewer_context": {
                "relation": "OPS" if viewer == "admin" else "SENDER",
                "allowed_actions": list(self.viewer_actions.get(viewer, [])),
            },
            "current_submittable_milestone_id": submittable["id"] if submittable else None,
            "current_submittable_milestone_idx": submittable["sequence_index"] if submittable else None,
        }

    @web.middleware
    async def _middleware(self, request: web.Request, handler):
        self.requests.append({
            "method": request.method,
            "path": request.path,
            "query": request.query_string,
            "headers": dict(request.headers),
        })
        injected = self.fail_next.get(f"{request.method} {request.path}")
        if injected:
            status = injected.pop(0)
            return _error(status, f"Injected failure {status}")

        if not request.path.startswith("/external/"):
            if request.headers.get("Authorization") != f"Bearer {self.auth_token}":
                return _error(401, "Not authenticated")
        return await handler(request)

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        app.add_routes([
            web.get("/escrows", self.list_escrows),
            web.post("/escrows", self.create_escrow),
            web.get("/escrows/{id}", self.get_escrow),
            web.get("/escrows/{id}/summary", self.sender_summary),
            web.get("/admin/escrows/{id}/summary", self.admin_summary),
            web.get("/escrows/{id}/milestones", self.list_milestones),
            web.post("/escrows/{id}/deposit", self.deposit),
            web.post("/escrows/{id}/funding-session", self.funding_session),
            web.post("/escrows/{id}/{action}", self.escrow_action),
            web.get("/proofs", self.list_proofs),
            web.post("/proofs", self.create_proof),
            web.get("/proofs/{id}", self.get_proof),
            web.post("/proofs/{id}/decision", self.decide_proof),
            web.post("/proofs/{id}/request_advisor_review", self.advisor_review),
            web.post("/files/proofs", self.upload_file),
            web.get("/admin/proofs/review-queue", self.review_queue),
            web.post("/payments/execute/{id}", self.execute_payment),
            web.get("/payments/{id}", self.get_payment),
            web.get("/sender/external-proof-tokens", self.list_tokens),
            web.post("/sender/external-proof-tokens", self.issue_token),
            web.get("/sender/external-proof-tokens/{id}", self.get_token),
            web.post("/sender/external-proof-tokens/{id}/revoke", self.revoke_token),
            web.get("/external/escrows/summary", self.external_summary),
            web.post("/external/files/proofs", self.external_upload),
            web.post("/external/proofs/submit", self.external_submit),
            web.get("/external/proofs/{id}/status", self.external_status),
        ])
        return app

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    async def list_escrows(self, request: web.Request) -> web.Response:
        items = list(self.escrows.values())
        status = request.query.get("status")
        if status:
            items = [e for e in items if e["status"] == status]
        return web.json_response({"items": items, "total": len(items), "limit": 50, "offset": 0})

    async def create_escrow(self, request: web.Request) -> web.Response:
        body = await request.json()
        key = request.headers.get("Idempotency-Key")
        if key and key in self.idempotency_keys:
            return web.json_response(self.escrows[self.idempotency_keys[key]], status=201)
        escrow_id = self.next_id()
        escrow = self.seed_escrow(
            escrow_id,
            status="DRAFT",
            amount_total=str(body["amount_total"]),
            currency=body["currency"],
            milestones=len(body.get("milestones") or []) or 1,
            beneficiary=bool(body.get("beneficiary_profile_id")),
        )
        if key:
            self.idempotency_keys[key] = escrow_id
        return web.json_response(escrow, status=201)

    async def get_escrow(self, request: web.Request) -> web.Response:
        escrow = self.escrows.get(request.match_info["id"])
        if escrow is None:
            return _error(404, "Escrow not found")
        return web.json_response(escrow)

    async def sender_summary(self, request: web.Request) -> web.Response:
        escrow_id = request.match_info["id"]
        if escrow_id not in self.escrows:
            return _error(404, "Escrow not found")
        return web.json_response(self._summary(escrow_id, "sender"))

    async def admin_summary(self, request: web.Request) -> web.Response:
        escrow_id = request.match_info["id"]
        if escrow_id not in self.escrows:
            return _error(404, "Escrow not found")
        return web.json_response(self._summary(escrow_id, "admin"))

    async def list_milestones(self, request: web.Request) -> web.Response:
        return web.json_response(self.milestones.get(request.match_info["id"], []))

    async def deposit(self, request: web.Request) -> web.Response:
        escrow = self.escrows[request.match_info["id"]]
        key = request.headers.get("Idempotency-Key")
        if not key:
            return _error(422, "Idempotency-Key header required")
        if escrow["status"] in ("DRAFT", "ACTIVE"):
            escrow["status"] = "FUNDED"
            self.idempotency_keys[key] = escrow["id"]
            return web.json_response({"escrow_id": escrow["id"], "status": escrow["status"]})
        if self.idempotency_keys.get(key) == escrow["id"]:
            return web.json_response({"escrow_id": escrow["id"], "status": escrow["status"]})
        return _error(409, "Escrow already funded", code="ESCROW_ALREADY_FUNDED")

    async def funding_session(self, request: web.Request) -> web.Response:
        escrow = self.escrows[request.match_info["id"]]
        if escrow["status"] not in ("DRAFT", "ACTIVE"):
            return _error(409, "Escrow already funded")
        return web.json_response({"client_secret": "cs_test", "escrow_id": escrow["id"]})

    async def escrow_action(self, request: web.Request) -> web.Response:
        escrow = self.escrows.get(request.match_info["id"])
        if escrow is None:
            return _error(404, "Escrow not found")
        action = request.match_info["action"]
        if action == "mark-delivered":
            if escrow["status"] != "FUNDED":
                return _error(409, "Escrow is not funded")
            escrow["status"] = "RELEASABLE"
        elif action == "client-approve":
            escrow["status"] = "RELEASED"
        elif action == "client-reject":
            escrow["status"] = "REFUNDED"
        elif action != "check-deadline":
            return _error(404, "Unknown action")
        return web.json_response(escrow)

    # ------------------------------------------------------------------
    # Proofs
    # ------------------------------------------------------------------

    async def list_proofs(self, request: web.Request) -> web.Response:
        items = [self._public(p) for p in self.proofs.values()]
        escrow_id = request.query.get("escrow_id")
        if escrow_id:
            items = [p for p in items if p["escrow_id"] == escrow_id]
        return web.json_response(items)

    async def create_proof(self, request: web.Request) -> web.Response:
        body = await request.json()
        milestone = next(
            (m for m in self.milestones.get(str(body["escrow_id"]), []) if m["id"] == body.get("milestone_id")),
            None,
        )
        proof = self.seed_proof(str(body["escrow_id"]), milestone["sequence_index"] if milestone else 1)
        proof["description"] = body.get("description")
        proof["file_id"] = body.get("file_id")
        return web.json_response(self._public(proof), status=201)

    async def get_proof(self, request: web.Request) -> web.Response:
        proof = self.proofs.get(request.match_info["id"])
        if proof is None:
            return _error(404, "Proof not found")
        return web.json_response(self._public(proof))

    async def decide_proof(self, request: web.Request) -> web.Response:
        proof = self.proofs.get(request.match_info["id"])
        if proof is None:
            return _error(404, "Proof not found")
        if proof["status"] != "PENDING":
            return _error(409, f"Proof already {proof['status']}", code="PROOF_ALREADY_DECIDED")
        body = await request.json()
        if body.get("decision") not in ("approve", "reject"):
            return web.json_response(
                {"detail": [{"loc": ["body", "decision"], "msg": "invalid decision"}]}, status=422
            )
        proof["status"] = "APPROVED" if body["decision"] == "approve" else "REJECTED"
        proof["_reviewed_at"] = _iso(_now())
        milestone = self._milestone(proof["escrow_id"], proof["milestone_idx"])
        if milestone:
            milestone["status"] = proof["status"]
        return web.json_response(self._public(proof))

    async def advisor_review(self, request: web.Request) -> web.Response:
        proof = self.proofs.get(request.match_info["id"])
        if proof is None:
            return _error(404, "Proof not found")
        proof["review_mode"] = "ADVISOR"
        return web.json_response({"proof_id": proof["id"], "review_mode": "ADVISOR"})

    async def upload_file(self, request: web.Request) -> web.Response:
        form = await request.post()
        upload = form["file"]
        content = upload.file.read()
        return web.json_response({
            "file_id": f"f-{self.next_id()}",
            "storage_key": f"proofs/{upload.filename}",
            "size_bytes": len(content),
            "content_type": upload.content_type,
            "escrow_id": form.get("escrow_id"),
        })

    async def review_queue(self, request: web.Request) -> web.Response:
        items = [self._public(p) for p in self.proofs.values() if p["status"] == "PENDING"]
        return web.json_response({"items": items, "total": len(items), "limit": 20, "offset": 0})

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def execute_payment(self, request: web.Request) -> web.Response:
        payment = self.payments.get(request.match_info["id"])
        if payment is None:
            return _error(404, "Payment not found")
        key = request.headers.get("Idempotency-Key")
        if payment["status"] == "PENDING":
            payment["status"] = "SENT"
            payment["idempotency_key"] = key
            payment["_reads_since_sent"] = 0
        elif payment["idempotency_key"] != key:
            return _error(409, "Payment already executed", code="PAYMENT_ALREADY_EXECUTED")
        return web.json_response(self._public(payment))

    async def get_payment(self, request: web.Request) -> web.Response:
        payment = self.payments.get(request.match_info["id"])
        if payment is None:
            return _error(404, "Payment not found")
        if payment["status"] == "SENT":
            payment["_reads_since_sent"] += 1
            if payment["_reads_since_sent"] >= self.settle_after_reads:
                payment["status"] = "SETTLED"
        return web.json_response(self._public(payment))

    # ------------------------------------------------------------------
    # External proof tokens (issuer side)
    # ------------------------------------------------------------------

    async def list_tokens(self, request: web.Request) -> web.Response:
        escrow_id = request.query.get("escrow_id")
        items = [self._token_view(t) for t in self.tokens.values() if t["target"]["escrow_id"] == escrow_id]
        milestone_idx = request.query.get("milestone_idx")
        if milestone_idx:
            items = [t for t in items if t["target"]["milestone_idx"] == int(milestone_idx)]
        return web.json_response({"items": items, "total": len(items), "limit": 50, "offset": 0})

    async def issue_token(self, request: web.Request) -> web.Response:
        body = await request.json()
        escrow_id = str(body["escrow_id"])
        if escrow_id not in self.escrows:
            return _error(404, "Escrow not found")
        minutes = body.get("expires_in_minutes", 10080)
        if not 10 <= minutes <= 43200:
            return web.json_response(
                {"detail": [{"loc": ["body", "expires_in_minutes"], "msg": "out of range"}]}, status=422
            )
        token_id = f"tok-{self.next_id()}"
        secret = f"ext_{uuid.uuid4().hex}"
        token = {
            "token_id": token_id,
            "secret": secret,
            "status": "ACTIVE",
            "target": {
                "escrow_id": escrow_id,
                "milestone_idx": int(body["milestone_idx"]),
                "beneficiary_profile_id": self.escrows[escrow_id].get("beneficiary_profile_id"),
            },
            "expires_at": _iso(_now() + timedelta(minutes=minutes)),
            "max_uploads": int(body.get("max_uploads", 1)),
            "uploads_used": 0,
            "issued_to_email": body.get("issued_to_email"),
            "note": body.get("note"),
            "created_at": _iso(_now()),
            "last_used_at": None,
            "revoked_at": None,
        }
        self.tokens[token_id] = token
        response = self._token_view(token)
        response["token"] = secret
        return web.json_response(response, status=201)

    async def get_token(self, request: web.Request) -> web.Response:
        token = self.tokens.get(request.match_info["id"])
        if token is None:
            return _error(404, "Token not found")
        return web.json_response(self._token_view(token))

    async def revoke_token(self, request: web.Request) -> web.Response:
        token = self.tokens.get(request.match_info["id"])
        if token is None:
            return _error(404, "Token not found")
        self._refresh_token(token)
        if token["status"] != "ACTIVE":
            return _error(409, f"Token already {token['status']}")
        token["status"] = "REVOKED"
        token["revoked_at"] = _iso(_now())
        return web.json_response(self._token_view(token))

    # ------------------------------------------------------------------
    # External bearer pathway
    # ------------------------------------------------------------------

    def _bearer_token(self, request: web.Request):
        header = request.headers.get("Authorization", "")
        secret = header[len("Bearer "):] if header.startswith("Bearer ") else None
        if not secret or request.headers.get("X-External-Token") != secret:
            return None, _error(401, "Missing external token")
        token = next((t for t in self.tokens.values() if t["secret"] == secret), None)
        if token is None:
            return None, _error(401, "Invalid external token")
        self._refresh_token(token)
        if token["status"] != "ACTIVE":
            return None, _error(410, f"Token {token['status'].lower()}", code="TOKEN_" + token["status"])
        return token, None

    async def external_summary(self, request: web.Request) -> web.Response:
        token, failure = self._bearer_token(request)
        if failure is not None:
            return failure
        escrow = self.escrows[token["target"]["escrow_id"]]
        return web.json_response({
            "escrow_id": escrow["id"],
            "status": escrow["status"],
            "currency": escrow["currency"],
            "amount_total": escrow["amount_total"],
            "beneficiary_profile_id": escrow.get("beneficiary_profile_id"),
            "milestones": [
                {
                    "milestone_idx": m["sequence_index"],
                    "label": m["label"],
                    "amount": m["amount"],
                    "status": m["status"],
                    "requires_proof": True,
                    "internal_note": "ops only",
                }
                for m in self.milestones.get(escrow["id"], [])
            ],
        })

    async def external_upload(self, request: web.Request) -> web.Response:
        token, failure = self._bearer_token(request)
        if failure is not None:
            return failure
        if token["uploads_used"] >= token["max_uploads"]:
            return _error(410, "Upload budget exhausted", code="TOKEN_USED")
        form = await request.post()
        upload = form["file"]
        content = upload.file.read()
        token["uploads_used"] += 1
        token["last_used_at"] = _iso(_now())
        return web.json_response({
            "storage_key": f"external/{token['token_id']}/{upload.filename}",
            "storage_url": f"https://files.example/external/{upload.filename}",
            "sha256": "0" * 64,
            "content_type": upload.content_type,
            "size_bytes": len(content),
            "escrow_id": token["target"]["escrow_id"],
            "milestone_idx": token["target"]["milestone_idx"],
        })

    async def external_submit(self, request: web.Request) -> web.Response:
        token, failure = self._bearer_token(request)
        if failure is not None:
            return failure
        body = await request.json()
        target = token["target"]
        if str(body["escrow_id"]) != target["escrow_id"] or int(body["milestone_idx"]) != target["milestone_idx"]:
            return _error(403, "Token not valid for this milestone")
        proof = self.seed_proof(target["escrow_id"], target["milestone_idx"])
        proof["_submitted_at"] = _iso(_now())
        proof["_storage_key"] = body["storage_key"]
        # Single-submission tokens are consumed by the submission
        token["status"] = "USED"
        return web.json_response({
            "proof_id": proof["id"],
            "status": proof["status"],
            "escrow_id": proof["escrow_id"],
            "milestone_idx": proof["milestone_idx"],
            "created_at": proof["created_at"],
            "storage_key": body["storage_key"],
        }, status=201)

    async def external_status(self, request: web.Request) -> web.Response:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return _error(401, "Missing external token")
        proof = self.proofs.get(request.match_info["id"])
        if proof is None:
            return _error(404, "Proof not found", code="PROOF_NOT_FOUND")
        return web.json_response({
            "proof_id": proof["id"],
            "status": proof["status"],
            "escrow_id": proof["escrow_id"],
            "milestone_idx": proof["milestone_idx"],
            "terminal": proof["status"] in ("APPROVED", "REJECTED"),
            "submitted_at": proof.get("_submitted_at") or proof["created_at"],
            "reviewed_at": proof.get("_reviewed_at"),
        })
