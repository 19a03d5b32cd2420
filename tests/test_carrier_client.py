import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.carrier_client import (
    CarrierClient,
    Destinatario,
    VippCredentials,
    build_post_payload,
    extract_tracking_code,
)
from services.errors import CarrierError

CREDS = VippCredentials(usuario="user", senha="secret", id_perfil="42")


def _carrier(handler):
    return CarrierClient(
        credentials=CREDS,
        post_url="https://vipp.test/PostarObjeto",
        print_url="https://vipp.test/remoto/",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _dest():
    return Destinatario(nome="Ana", logradouro="Av. Paulista", cep="01310-100", telefone="(11) 99999-0000", documento="123.456.789-00")


def test_payload_normalizes_recipient_fields():
    payload = build_post_payload(CREDS, _dest(), "3298", "HP1")

    assert payload["PerfilVipp"] == {"Usuario": "user", "Token": "secret", "IdPerfil": "42"}
    assert payload["Destinatario"]["Cep"] == "01310100"
    assert payload["Destinatario"]["CnpjCpf"] == "12345678900"
    assert payload["Destinatario"]["Numero"] == "S/N"
    assert payload["Servico"] == {"ServicoECT": "3298"}
    assert payload["Volumes"][0]["CodigoBarraCliente"] == "HP1"


def test_extract_tracking_code():
    assert extract_tracking_code({"Volumes": [{"Etiqueta": "AB123BR"}]}) == "AB123BR"

    with pytest.raises(CarrierError) as excinfo:
        extract_tracking_code({"ListaErros": [{"Descricao": "CEP inválido"}, {"Descricao": "Sem número"}]})
    assert excinfo.value.message == "CEP inválido, Sem número"
    assert excinfo.value.errors == ["CEP inválido", "Sem número"]

    with pytest.raises(CarrierError):
        extract_tracking_code({"StatusPostagem": "Invalida", "Volumes": [{"Etiqueta": "X"}]})
    with pytest.raises(CarrierError):
        extract_tracking_code({"Volumes": [{}]})
    with pytest.raises(CarrierError):
        extract_tracking_code([])


def test_post_object_returns_code():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"StatusPostagem": "Valida", "Volumes": [{"Etiqueta": "AB123BR"}]})

    code = asyncio.run(_carrier(handler).post_object(_dest(), "201501", "HP1"))

    assert code == "AB123BR"
    assert sent[0]["Destinatario"]["Nome"] == "Ana"


def test_post_object_rejects_non_json():
    def handler(request):
        return httpx.Response(502, text="<html>bad gateway</html>")

    with pytest.raises(CarrierError) as excinfo:
        asyncio.run(_carrier(handler).post_object(_dest(), "201501", "HP1"))
    assert excinfo.value.status_code == 502


def test_print_returns_pdf_bytes():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["lista"] = request.url.params["Lista"]
        seen["saida"] = request.url.params["Saida"]
        return httpx.Response(200, content=b"%PDF-1.4", headers={"content-type": "application/pdf"})

    result = asyncio.run(_carrier(handler).print_labels(["AA1BR", "", "AA2BR"]))

    assert result.content == b"%PDF-1.4"
    assert result.codes == ["AA1BR", "AA2BR"]
    assert seen == {"path": "/remoto/ImpressaoRemota.php", "lista": "AA1BR,AA2BR", "saida": "20"}


def test_print_html_page_becomes_download_url():
    def handler(request):
        return httpx.Response(200, text="<html>ok</html>", headers={"content-type": "text/html"})

    result = asyncio.run(_carrier(handler).print_labels(["AA1BR"]))

    assert result.content is None
    assert result.download_url.startswith("https://vipp.test/remoto/ImpressaoRemota.php?")
    assert "Lista=AA1BR" in result.download_url


@pytest.mark.parametrize("status, expected", [(215, 404), (210, 401), (500, 500)])
def test_print_status_codes(status, expected):
    def handler(request):
        return httpx.Response(status, text="")

    with pytest.raises(CarrierError) as excinfo:
        asyncio.run(_carrier(handler).print_labels(["AA1BR"]))
    assert excinfo.value.status_code == expected


def test_print_error_text():
    def handler(request):
        return httpx.Response(200, text="Erro: etiqueta inexistente", headers={"content-type": "text/plain"})

    with pytest.raises(CarrierError):
        asyncio.run(_carrier(handler).print_labels(["AA1BR"]))


def test_print_without_codes():
    with pytest.raises(CarrierError):
        asyncio.run(_carrier(lambda request: httpx.Response(200)).print_labels([]))


def test_masked_credentials_hide_the_password():
    masked = VippCredentials(usuario="user", senha="secret", id_perfil="42").masked()

    assert masked["usuario"] == "user"
    assert masked["senha"] == "sec***"
    assert masked["servicoEct"] == "(vazio - usa perfil)"
    assert masked["nrContrato"] == "(vazio)"
    assert VippCredentials().masked()["senha"] == "(vazio)"


def test_credential_check_posts_a_test_object():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"Volumes": [{"Etiqueta": "TE000BR"}]})

    code = asyncio.run(_carrier(handler).check_credentials())

    assert code == "TE000BR"
    payload = bodies[0]
    assert payload["Destinatario"]["Nome"] == "TESTE CREDENCIAIS"
    assert payload["Destinatario"]["Cep"] == "60000000"
    assert payload["Volumes"][0]["CodigoBarraCliente"].startswith("TESTE-")


def test_credential_check_reports_carrier_errors():
    def handler(request):
        return httpx.Response(200, json={"ListaErros": [{"Descricao": "Usuário inválido"}]})

    with pytest.raises(CarrierError) as excinfo:
        asyncio.run(_carrier(handler).check_credentials())
    assert excinfo.value.errors == ["Usuário inválido"]
