"""Montagem do system prompt e do turno do usuário enviado ao Gemini."""

from __future__ import annotations

from collections.abc import Mapping

from app.models.inbound import Agent

POLICY_HEADER = """CONTEXTO IMPORTANTE (GHL/CRM):
- Você é um agente interno operando dentro do CRM GoHighLevel (GHL).
- O cliente NÃO tem acesso a IDs internos, tokens, payloads ou ao “cadastro bruto”.
- NUNCA peça IDs internos (contactId, conversationId, etc) e NUNCA mencione esses IDs.
- Se você não conseguir acessar um dado no CRM, diga que não conseguiu acessar a informação no momento.

CAMPOS NATIVOS (contato) — dicionário prático:
- Primeiro Nome: firstName
- Sobrenome: lastName
- Nome completo (Nome): name = firstName + lastName
- Email: email
- Telefone: phone
- Empresa: companyName OU businessName OU company
- Endereço (pense como um “objeto endereço” com campos):
  - street/address1: Rua
  - state: Estado
  - country: País
  - postalCode: CEP
  - city: Cidade
  - address2: Complemento

REGRAS:
- “Nome” normalmente é o nome completo (firstName + lastName), mas você pode atualizar Primeiro Nome e Sobrenome separadamente.

CAPACIDADES:
- Consultar o contato atual (GET CONTACT) para ver o cadastro.
- Atualizar dados do contato (MANAGE CONTACT) quando o usuário solicitar.
- Consultar campos personalizados disponíveis (GET CUSTOM FIELDS) se precisar entender IDs.

LINKS:
- Nunca invente links. Use apenas URLs que aparecem no contexto na forma "URL de referência: <url>".
- Se não houver URL de referência para o assunto, não cite link nenhum.

FORMATAÇÃO (WhatsApp):
- Use *asteriscos* para negrito e _underscores_ para itálico.
- Não use Markdown de títulos, tabelas ou links no formato [texto](url).

IMAGENS:
- Quando o usuário enviar imagens, descreva apenas o que é visível e relevante para a conversa.
- Se a imagem estiver ilegível ou não for possível analisá-la, diga isso e peça uma nova foto."""

HIDDEN = "não mencionar ao usuário"


def build_system_prompt(agent: Agent) -> str:
    persona = [
        part.strip()
        for part in (agent.personality, agent.objective, agent.additional_info, agent.system_prompt)
        if part and part.strip()
    ]
    sections = ["\n".join(persona)] if persona else []
    sections.append(POLICY_HEADER)
    return "\n\n".join(sections)


def _hidden_block(title: str, lines: Mapping[str, object]) -> str:
    body = "\n".join(f"{key}={'' if value is None else value}" for key, value in lines.items())
    return f"[{title} - {HIDDEN}]\n{body}"


def build_user_turn(
    *,
    history: str,
    context: str,
    messages: str,
    metadata: Mapping[str, object],
    company: str = "",
    snapshot: str = "",
) -> str:
    """Texto do turno do usuário: histórico, contexto recuperado, mensagens e blocos ocultos."""
    text = f"Histórico:\n{history}\n\nContexto:\n{context}\n\nMensagens:\n{messages}"
    text += "\n\n" + _hidden_block("Dados técnicos", metadata)
    if company:
        text += "\n\n" + _hidden_block("Derivado", {"empresa_cadastrada": company})
    if snapshot:
        text += "\n\n" + snapshot
    return text
