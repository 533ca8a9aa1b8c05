"""
Prompts for the lead-qualification assistant (Brazilian Portuguese).

The system prompt states the funnel and the JSON reply contract; the context
message carries the per-turn state the model needs (collected fields, open
slots, past no-shows).
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from leadflow.db_models import AppointmentStatus, Intention, LeadTemperature, MessageSender
from leadflow.date_helpers import WEEKDAY_NAMES, weekday_number
from leadflow.models import AvailabilitySlot

_INTENTION_PT = {
    Intention.SELL: "vender",
    Intention.BUY: "comprar",
    Intention.TRADE: "trocar",
    Intention.APPRAISE: "avaliar",
}


@dataclass
class ConversationContext:
    """Everything the AI sees for one turn."""
    phone: str
    now: datetime
    is_working_day: bool
    customer_name: Optional[str] = None
    vehicle: Optional[str] = None
    city: Optional[str] = None
    intention: Optional[Intention] = None
    lead_temperature: LeadTemperature = LeadTemperature.WARM
    # (sender, content) in chronological order
    messages: List[tuple] = field(default_factory=list)
    available_slots: List[AvailabilitySlot] = field(default_factory=list)
    previous_appointment_statuses: List[AppointmentStatus] = field(default_factory=list)

    @property
    def has_minimum_data(self) -> bool:
        return bool(self.customer_name and self.vehicle)


JSON_CONTRACT = """{
  "message": "Sua mensagem para o cliente",
  "action": "none|schedule|transfer|follow_up|close",
  "extractedData": {
    "customerName": "nome ou null",
    "vehicle": "veículo ou null",
    "city": "cidade ou null",
    "intention": "vender|comprar|trocar|avaliar ou null",
    "desiredDate": "data EXATAMENTE como o cliente disse: 'amanha', 'hoje', 'segunda', '15/02'. null se não mencionada.",
    "desiredTime": "HH:MM ou null"
  },
  "leadTemperature": "hot|warm|cold",
  "confidence": 0.0 a 1.0
}"""


def build_system_prompt(bot_name: str, brand_name: str, style: str = "standard") -> str:
    if style == "compact":
        return _compact_prompt(bot_name, brand_name)
    return _standard_prompt(bot_name, brand_name)


def _standard_prompt(bot_name: str, brand_name: str) -> str:
    return f"""## REGRAS ABSOLUTAS
1. NUNCA sugira horário ou agendamento sem antes ter coletado o NOME do cliente.
2. NUNCA sugira horário ou agendamento sem antes saber qual é o VEÍCULO (marca/modelo).
3. Se faltar nome ou veículo, sua resposta DEVE ser uma pergunta para coletar o dado faltante.
4. Só use action "schedule" quando o cliente CONFIRMAR explicitamente o horário E você tiver nome + veículo.
5. NÃO preencha desiredDate ou desiredTime se o cliente NÃO mencionou data/hora.

## IDENTIDADE
Você é {bot_name}, consultora de atendimento da {brand_name}, uma loja de veículos.
Sua missão é converter leads em visitas presenciais confirmadas na loja.
Comunique-se como uma pessoa educada e natural. Mensagens curtas (máximo 3 linhas).
Pode usar emojis com moderação.

## FUNIL (siga nesta ordem, sem pular etapas)
1. Conexão: cumprimente e faça UMA pergunta para entender o que o cliente quer.
2. Diagnóstico: colete nome, veículo (marca e modelo), cidade e intenção
   (vender, comprar, trocar, avaliar). 1-2 dados por mensagem. Não repita perguntas.
3. Valor: explique em 1-2 frases por que vale a pena vir à loja.
4. Agendamento: ofereça exatamente 2 opções de horário da lista do sistema.
   Use APENAS horários da lista. NUNCA invente horários.
5. Confirmação: só quando o cliente escolher um horário, confirme dia e hora.

## TRANSFERÊNCIA PARA HUMANO
Use action "transfer" quando o cliente pedir um atendente, reclamar, fizer
pergunta fora do escopo automotivo ou negociar valores específicos.

## FORMATO DE RESPOSTA
Responda APENAS com JSON, sem texto antes ou depois:
{JSON_CONTRACT}

- "none": conversa normal, coleta de dados. Use na maioria das interações.
- "schedule": SOMENTE com nome + veículo coletados e dia e horário confirmados pelo cliente.
- "follow_up": quando o cliente esfriar ou sumir.
- "close": quando a conversa terminar definitivamente.
- "extractedData": APENAS dados que o CLIENTE informou. NUNCA invente.
- "leadTemperature": avalie a cada mensagem.
"""


def _compact_prompt(bot_name: str, brand_name: str) -> str:
    return f"""Você é {bot_name}, atendente da {brand_name}. Especialista automotivo.
Objetivo: converter lead em agendamento na loja.

FUNIL OBRIGATÓRIO (não pular etapas):
1. Cumprimentar e entender interesse
2. Coletar NOME + VEÍCULO + CIDADE (1-2 por msg)
3. Construir valor brevemente
4. Oferecer 2 horários da lista do sistema
5. Só usar action "schedule" quando o cliente CONFIRMAR e você tiver nome + veículo

Regras: máx 2 linhas, natural, sem pressão. Dúvida complexa: transferir.

JSON:
{{"message":"texto","action":"none|schedule|transfer|follow_up|close","extractedData":{{"customerName":null,"vehicle":null,"city":null,"intention":null,"desiredDate":"como cliente disse ou null","desiredTime":"HH:MM ou null"}},"leadTemperature":"hot|warm|cold","confidence":0.0-1.0}}
"""


def conversation_phase(message_count: int) -> str:
    if message_count >= 8:
        return "CONFIRMAÇÃO / FECHAMENTO"
    if message_count >= 6:
        return "DIRECIONAMENTO PARA AGENDAMENTO"
    if message_count >= 4:
        return "CONSTRUÇÃO DE VALOR"
    if message_count >= 2:
        return "DIAGNÓSTICO"
    return "CONEXÃO / ABERTURA"


def _slot_label(slot: AvailabilitySlot) -> str:
    return f"{WEEKDAY_NAMES[weekday_number(slot.day)]} ({slot.day.strftime('%d/%m')}) às {slot.time}"


def build_context_message(context: ConversationContext) -> str:
    now = context.now
    parts = ["[CONTEXTO DO SISTEMA]"]
    parts.append(f"Data de hoje: {now.strftime('%d/%m/%Y')} ({WEEKDAY_NAMES[weekday_number(now.date())]})")
    parts.append(f"Dia útil: {'SIM' if context.is_working_day else 'NÃO, hoje não é dia útil'}")
    parts.append(f"Telefone do cliente: {context.phone}")

    count = len(context.messages)
    parts.append(f"Fase da conversa: {conversation_phase(count)} ({count} mensagens trocadas)")

    collected, missing = [], []
    for label, value, missing_label in (
        ("Nome", context.customer_name, "nome"),
        ("Veículo", context.vehicle, "veículo"),
        ("Cidade", context.city, "cidade"),
        ("Intenção", _INTENTION_PT.get(context.intention) if context.intention else None, "intenção (vender/comprar/trocar)"),
    ):
        if value:
            collected.append(f"{label}: {value}")
        else:
            missing.append(missing_label)

    if collected:
        parts.append(f"Dados coletados: {' | '.join(collected)}")
    if missing:
        parts.append(f"Falta coletar: {', '.join(missing)}")
        blocking = [m for m in missing if m in ("nome", "veículo")]
        if blocking:
            parts.append(
                f"BLOQUEIO: NÃO sugira agendamento ainda. Primeiro colete {' e '.join(blocking)}. Use action \"none\"."
            )

    parts.append(f"Temperatura do lead: {context.lead_temperature.value}")

    no_shows = sum(1 for s in context.previous_appointment_statuses if s == AppointmentStatus.NO_SHOW)
    cancelled = sum(1 for s in context.previous_appointment_statuses if s == AppointmentStatus.CANCELLED)
    if no_shows:
        parts.append(f"Este lead já FALTOU {no_shows}x em agendamento(s) anterior(es). Use recuperação elegante.")
    if cancelled:
        parts.append(f"Este lead cancelou {cancelled}x anteriormente. Reduza fricção ao máximo.")

    slots = context.available_slots
    if len(slots) >= 2:
        if context.has_minimum_data:
            early = slots[0]
            late = slots[min(len(slots) // 2, len(slots) - 1)]
            parts.append("\nHorários disponíveis para ESCOLHA GUIADA (ofereça estas 2 opções):")
            parts.append(f"  Opção 1: {_slot_label(early)}")
            parts.append(f"  Opção 2: {_slot_label(late)}")
            parts.append(f"Outros disponíveis: {', '.join(_slot_label(s) for s in slots[:6])}")
        else:
            parts.append("\nHorários disponíveis NÃO mostrados: primeiro colete nome e veículo do cliente.")

    return "\n".join(parts)


def build_message_history(context: ConversationContext) -> List[dict]:
    """Chat messages for the model: the context message, then the transcript."""
    messages = [{"role": "system", "content": build_context_message(context)}]
    for sender, content in context.messages:
        if sender == MessageSender.CUSTOMER:
            messages.append({"role": "user", "content": content})
        elif sender == MessageSender.BOT:
            # Replay past replies in the same JSON shape the model must produce.
            messages.append(
                {"role": "assistant", "content": json.dumps({"message": content, "action": "none"}, ensure_ascii=False)}
            )
        else:
            messages.append({"role": "assistant", "content": content})
    return messages
