"""
VIPP carrier middleware client: post an object (returns the tracking code)
and fetch printable labels for issued codes.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import httpx

from services.errors import CarrierError
from services.row_normalizer import digits_only, safe_string
import settings

logger = logging.getLogger(__name__)

PRINT_STATUS_NOT_FOUND = 215
PRINT_STATUS_BAD_CREDENTIALS = 210
PRINT_OUTPUT_CODES = {"pdf": "20", "zpl": "10"}


@dataclass
class Destinatario:
    nome: str
    logradouro: str = ""
    numero: str = ""
    complemento: str = ""
    bairro: str = ""
    cidade: str = ""
    uf: str = ""
    cep: str = ""
    telefone: str = ""
    email: str = ""
    documento: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "nome": self.nome,
            "logradouro": self.logradouro,
            "numero": self.numero,
            "complemento": self.complemento,
            "bairro": self.bairro,
            "cidade": self.cidade,
            "uf": self.uf,
            "cep": self.cep,
            "telefone": self.telefone,
            "email": self.email,
            "documento": self.documento,
        }


@dataclass
class VippCredentials:
    usuario: str = ""
    senha: str = ""
    id_perfil: str = ""
    servico_ect: str = ""
    nr_contrato: str = ""
    cod_administrativo: str = ""
    nr_cartao: str = ""

    @classmethod
    def from_settings(cls) -> "VippCredentials":
        return cls(
            usuario=settings.VIPP_USUARIO,
            senha=settings.VIPP_SENHA,
            id_perfil=settings.VIPP_ID_PERFIL,
            servico_ect=settings.VIPP_SERVICO_ECT,
            nr_contrato=settings.VIPP_NR_CONTRATO,
            cod_administrativo=settings.VIPP_COD_ADMINISTRATIVO,
            nr_cartao=settings.VIPP_NR_CARTAO,
        )

    def masked(self) -> Dict[str, str]:
        """Current configuration for display; only the first characters of the password."""
        return {
            "usuario": self.usuario,
            "senha": f"{self.senha[:3]}***" if self.senha else "(vazio)",
            "idPerfil": self.id_perfil,
            "servicoEct": self.servico_ect or "(vazio - usa perfil)",
            "nrContrato": self.nr_contrato or "(vazio)",
            "codAdministrativo": self.cod_administrativo or "(vazio)",
            "nrCartao": self.nr_cartao or "(vazio)",
        }


# fictitious recipient for the credential check posting
CREDENTIAL_CHECK_RECIPIENT = Destinatario(
    nome="TESTE CREDENCIAIS",
    logradouro="RUA TESTE",
    numero="123",
    bairro="CENTRO",
    cidade="FORTALEZA",
    uf="CE",
    cep="60000000",
    telefone="85999999999",
    email="teste@teste.com",
    documento="12345678900",
)


@dataclass
class PrintResult:
    content: Optional[bytes] = None
    content_type: str = "application/pdf"
    download_url: Optional[str] = None
    codes: List[str] = field(default_factory=list)


def build_post_payload(
    credentials: VippCredentials,
    destinatario: Destinatario,
    service_code: str,
    transaction_id: str,
) -> Dict[str, Any]:
    return {
        "PerfilVipp": {
            "Usuario": credentials.usuario,
            "Token": credentials.senha,
            "IdPerfil": credentials.id_perfil,
        },
        "ContratoEct": {
            "NrContrato": credentials.nr_contrato,
            "CodigoAdministrativo": credentials.cod_administrativo,
            "NrCartao": credentials.nr_cartao,
        },
        "Destinatario": {
            "CnpjCpf": digits_only(destinatario.documento),
            "IeRg": "",
            "Nome": destinatario.nome,
            "SegundaLinhaDestinatario": "",
            "Endereco": destinatario.logradouro,
            "Numero": destinatario.numero or "S/N",
            "Complemento": destinatario.complemento or "",
            "Bairro": destinatario.bairro or "",
            "Cidade": destinatario.cidade,
            "UF": destinatario.uf,
            "Cep": digits_only(destinatario.cep),
            "Telefone": digits_only(destinatario.telefone),
            "Celular": "",
            "Email": destinatario.email or "",
        },
        "Servico": {"ServicoECT": service_code or credentials.servico_ect},
        "NotasFiscais": [
            {"DtNotaFiscal": "", "SerieNotaFiscal": "", "NrNotaFiscal": "", "VlrTotalNota": ""},
        ],
        "Volumes": [
            {
                "Peso": "500",
                "Altura": "5",
                "Largura": "15",
                "Comprimento": "20",
                "ContaLote": "",
                "ChaveRoteamento": "",
                "CodigoBarraVolume": "",
                "CodigoBarraCliente": transaction_id,
                "ObservacaoVisual": "",
                "ObservacaoQuatro": "",
                "ObservacaoCinco": "",
                "PosicaoVolume": "1",
                "Conteudo": "Livro",
                "ValorDeclarado": "",
                "AdicionaisVolume": "",
                "VlrACobrar": "",
                "Etiqueta": "",
            }
        ],
    }


def extract_tracking_code(data: Any) -> str:
    """Tracking code from a PostarObjeto response, or CarrierError describing why there is none."""
    if not isinstance(data, dict):
        raise CarrierError("Resposta inválida da ViPP")

    errors = data.get("ListaErros") or []
    if errors:
        descriptions = [safe_string(err.get("Descricao") if isinstance(err, dict) else err) for err in errors]
        raise CarrierError(", ".join(d for d in descriptions if d) or "Erro da ViPP", errors=descriptions)

    if data.get("StatusPostagem") == "Invalida":
        raise CarrierError("Postagem inválida")

    volumes = data.get("Volumes") or []
    code = ""
    if volumes and isinstance(volumes[0], dict):
        code = safe_string(volumes[0].get("Etiqueta"))
    if not code:
        raise CarrierError("Etiqueta não retornada pela ViPP")
    return code


class CarrierClient:
    def __init__(
        self,
        credentials: Optional[VippCredentials] = None,
        post_url: str = settings.VIPP_API_URL,
        print_url: str = settings.VIPP_PRINT_URL,
        timeout: float = settings.VIPP_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.credentials = credentials or VippCredentials.from_settings()
        self.post_url = post_url
        self.print_url = f"{print_url.rstrip('/')}/ImpressaoRemota.php"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def post_object(self, destinatario: Destinatario, service_code: str, transaction_id: str) -> str:
        payload = build_post_payload(self.credentials, destinatario, service_code, transaction_id)
        logger.info("VIPP PostarObjeto transaction=%s service=%s", transaction_id, payload["Servico"]["ServicoECT"])

        resp = await self._client.post(
            self.post_url,
            json=payload,
            headers={"Content-Type": "application/json", "Accept-Encoding": "UTF-8"},
        )
        try:
            data = json.loads(resp.text)
        except ValueError:
            raise CarrierError("Resposta inválida da ViPP", status_code=resp.status_code)

        code = extract_tracking_code(data)
        logger.info("VIPP issued %s for transaction %s", code, transaction_id)
        return code

    async def check_credentials(self) -> str:
        """
        Post a test object with the configured credentials. A real label is
        issued on success, so this is an operator action, not a health check.
        """
        barcode = f"TESTE-{int(time.time() * 1000)}"
        logger.warning("VIPP credential check: posting test object %s", barcode)
        return await self.post_object(CREDENTIAL_CHECK_RECIPIENT, self.credentials.servico_ect, barcode)

    def print_params(self, codes: Sequence[str], fmt: str = "pdf") -> Dict[str, str]:
        return {
            "Usr": self.credentials.usuario,
            "Pwd": self.credentials.senha,
            "Filtro": "1",
            "Saida": PRINT_OUTPUT_CODES.get(fmt, PRINT_OUTPUT_CODES["pdf"]),
            "Lista": ",".join(codes),
        }

    async def print_labels(self, codes: Sequence[str], fmt: str = "pdf") -> PrintResult:
        codes = [c for c in codes if c]
        if not codes:
            raise CarrierError("Nenhuma etiqueta para imprimir")

        params = self.print_params(codes, fmt)
        resp = await self._client.get(self.print_url, params=params)

        if resp.status_code == PRINT_STATUS_NOT_FOUND:
            raise CarrierError(
                "Etiquetas não encontradas no sistema ViPP. Aguarde alguns minutos e tente novamente.",
                status_code=404,
            )
        if resp.status_code == PRINT_STATUS_BAD_CREDENTIALS:
            raise CarrierError("Usuário ou senha inválidos", status_code=401)
        if resp.status_code != 200:
            raise CarrierError(f"Erro ao gerar PDF: {resp.status_code}", status_code=resp.status_code)

        content_type = resp.headers.get("content-type", "")
        if "application/pdf" in content_type:
            return PrintResult(content=resp.content, content_type="application/pdf", codes=codes)

        text = resp.text
        if "erro" in text.lower():
            raise CarrierError("Erro da ViPP", errors=[text[:500]], status_code=400)

        return PrintResult(download_url=f"{self.print_url}?{urlencode(params)}", codes=codes)
