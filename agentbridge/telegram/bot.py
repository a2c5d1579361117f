"""
Telegram bot for driving a coding agent from a private chat.

Commands control the session; any other text is forwarded to the running
agent. Agent output reaches the chat through the delivery queue, never
directly from here.
"""
import html
from typing import Optional, Set

from telegram import BotCommand as TGBotCommand
from telegram.constants import ChatType
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, MessageHandler, filters

from ..adapters import AdapterRegistry, Capability
from ..config import BridgeConfig
from ..coordinator import Coordinator, parse_start_phrase
from ..errors import BridgeError
from ..logging_config import get_logger
from ..storage import MessageTracker, UserStorage
from .commands import (
    COMMANDS,
    format_agent_list,
    format_help_text,
    format_model_list,
    format_session_list,
    format_status,
    format_welcome,
    truncate_output,
)
from .delivery import DeliveryQueue
from .models import CallbackAction
from .rate_limiter import RateLimitGovernor

logger = get_logger("agentbridge.telegram")

MAX_REPLY_LENGTH = 4096
MAX_TOAST_LENGTH = 200


class TelegramBot:
    """Private-chat front end for the coordinator."""

    def __init__(
        self,
        config: BridgeConfig,
        registry: AdapterRegistry,
        users: UserStorage,
        tracker: Optional[MessageTracker] = None,
    ):
        self._config = config
        self._registry = registry
        self._users = users
        self._tracker = tracker
        self._allowed_users: Set[int] = set(config.allowed_user_ids)
        self._app = None  # python-telegram-bot Application
        self._running = False
        self._bot_username: str = ""
        self.delivery: Optional[DeliveryQueue] = None
        self.coordinator: Optional[Coordinator] = None

    def attach(self, bot) -> Coordinator:
        """Wire the delivery queue and coordinator to a Bot API client."""
        self.delivery = DeliveryQueue(
            bot,
            governor=RateLimitGovernor(),
            tracker=self._tracker,
            output_delay=self._config.output_debounce,
            status_delay=self._config.status_debounce,
        )
        self.coordinator = Coordinator(self._registry, self.delivery, self._users, self._config.work_dir)
        return self.coordinator

    # ─── Lifecycle ─────────────────────────────────────────────────────

    async def start(self):
        """Start the bot with long-polling."""
        if self._running:
            raise RuntimeError("Telegram bot is already running")
        if not self._config.bot_token:
            raise ValueError("No bot token configured")

        # Agent starts can take minutes (installs); don't block other chats
        self._app = Application.builder().token(self._config.bot_token).concurrent_updates(True).build()
        self.attach(self._app.bot)
        self._register_handlers()

        await self._app.initialize()
        await self._app.start()

        try:
            tg_commands = [TGBotCommand(cmd.command, cmd.description) for cmd in COMMANDS]
            await self._app.bot.set_my_commands(tg_commands)
            me = await self._app.bot.get_me()
            self._bot_username = me.username or ""
            logger.info(f"Telegram bot started as @{self._bot_username}")
        except Exception as e:
            logger.error(f"Failed to set bot commands: {e}")

        self._running = True
        await self._app.updater.start_polling(drop_pending_updates=True)
        logger.info(f"Telegram bot polling started, allowed users: {sorted(self._allowed_users)}")

    async def stop(self):
        """Stop every session, flush pending output, then stop polling."""
        if not self._running:
            return
        self._running = False

        if self.coordinator:
            try:
                await self.coordinator.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down sessions: {e}")

        try:
            if self._app:
                if self._app.updater and self._app.updater.running:
                    await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()
                self._app = None
        except Exception as e:
            logger.error(f"Error stopping telegram bot: {e}")

        self._bot_username = ""
        logger.info("Telegram bot stopped")

    # ─── Handler registration ──────────────────────────────────────────

    def _register_handlers(self):
        """Register all command, message, and callback handlers."""
        commands = [
            ("start", self._cmd_start),
            ("help", self._cmd_help),
            ("setup", self._cmd_setup),
            ("status", self._cmd_status),
            ("claude", self._cmd_claude),
            ("agent", self._cmd_agent),
            ("stop", self._cmd_stop),
            ("c", self._cmd_interrupt),
            ("y", self._cmd_yes),
            ("n", self._cmd_no),
            ("enter", self._cmd_enter),
            ("up", self._cmd_up),
            ("down", self._cmd_down),
            ("tab", self._cmd_tab),
            ("model", self._cmd_model),
            ("sessions", self._cmd_sessions),
            ("resume", self._cmd_resume),
            ("output", self._cmd_output),
            ("clear", self._cmd_clear),
            ("forget", self._cmd_forget),
        ]
        for command, handler in commands:
            self._app.add_handler(CommandHandler(command, handler))

        # Inline button callbacks
        self._app.add_handler(CallbackQueryHandler(self._handle_callback))

        # Plain text goes to the agent
        self._app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_text))

        self._app.add_error_handler(self._handle_error)

    # ─── Auth ──────────────────────────────────────────────────────────

    def _check_auth(self, user_id: int) -> bool:
        if not self._allowed_users:
            return False
        return user_id in self._allowed_users

    async def _authorize(self, update, announce: bool = False) -> Optional[int]:
        """The sender's id if this is an allowed user in a private chat."""
        chat = update.effective_chat
        user = update.effective_user
        if chat is None or user is None:
            return None
        if chat.type != ChatType.PRIVATE:
            if announce:
                await self._reply(update, "This bot works only in private messages.")
            return None
        if not self._check_auth(user.id):
            logger.warning(f"Rejected message from user {user.id}")
            if announce:
                await self._reply(update, "Access denied.")
            return None
        return user.id

    # ─── Callback handler ──────────────────────────────────────────────

    async def _handle_callback(self, update, context):
        """Route inline keyboard button presses."""
        query = update.callback_query
        user_id = query.from_user.id

        if not self._check_auth(user_id):
            await query.answer("Not authorized.", show_alert=True)
            return

        action = CallbackAction.parse(query.data)
        if action is None:
            await query.answer("Unknown action.")
            return

        try:
            if action.kind == "option":
                number = str(action.option)
                if await self.coordinator.send_input(user_id, number):
                    toast = f"Sent: {number}"
                else:
                    toast = "No session running"
            else:
                toast = await self.coordinator.answer(user_id, action.question, action.option)
            await query.answer(toast[:MAX_TOAST_LENGTH])
        except Exception as e:
            logger.error(f"Callback error: {e}")
            await query.answer(f"Error: {e}"[:MAX_TOAST_LENGTH])

    # ─── Command handlers ──────────────────────────────────────────────

    async def _cmd_start(self, update, context):
        user_id = await self._authorize(update, announce=True)
        if user_id is None:
            return
        config = self.coordinator.user_config(user_id)
        label = self.coordinator.selected_adapter(user_id).label
        await self._reply(update, format_welcome(
            config.work_dir if config else None,
            self._config.work_dir,
            label,
        ))

    async def _cmd_help(self, update, context):
        if await self._authorize(update) is None:
            return
        await self._reply(update, format_help_text())

    async def _cmd_setup(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        work_dir = " ".join(context.args or []).strip()
        if not work_dir:
            await self._reply(
                update,
                "Usage: /setup &lt;path&gt;\n\n"
                "Example:\n"
                "<code>/setup /workspace</code>\n"
                "<code>/setup /home/user/projects/myapp</code>",
            )
            return
        try:
            self.coordinator.set_work_dir(user_id, work_dir)
        except Exception as e:
            logger.error(f"Failed to save work dir for user {user_id}: {e}")
            await self._reply(update, f"Error: {html.escape(str(e))}")
            return
        await self._reply(update, f"Work directory set to: <code>{html.escape(work_dir)}</code>\n\n/claude to start")

    async def _cmd_status(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        config = self.coordinator.user_config(user_id)
        selected = self.coordinator.selected_adapter(user_id)
        active = self.coordinator.active_adapter(user_id)
        await self._reply(update, format_status(
            work_dir=config.work_dir if config else self._config.work_dir,
            is_default=config is None,
            agent_label=selected.label,
            active_label=active.label if active else None,
            state=selected.state(user_id).value,
            model=active.get_model(user_id) if active else None,
            cooldown=self.delivery.governor.remaining(user_id),
        ))

    async def _cmd_claude(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        instruction = " ".join(context.args or []).strip() or None
        await self._start_agent(update, user_id, instruction)

    async def _start_agent(self, update, user_id: int, instruction: Optional[str]):
        adapter = self.coordinator.selected_adapter(user_id)
        if adapter.is_active(user_id):
            await self._reply(update, f"{adapter.label} already running. /stop to stop")
            return

        work_dir = self.coordinator.work_dir(user_id)
        await self._reply(update, f"Starting {adapter.label} in <code>{html.escape(work_dir)}</code>...")
        try:
            await self.coordinator.start(user_id, instruction)
        except BridgeError as e:
            logger.error(f"Failed to start {adapter.name} for user {user_id}: {e}")
            await self._reply(update, f"Error: {html.escape(str(e))}")

    async def _cmd_agent(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        current = self.coordinator.context(user_id).agent
        if not context.args:
            await self._reply(update, format_agent_list(self._registry.available(), current))
            return
        try:
            name = self.coordinator.select_agent(user_id, context.args[0])
        except KeyError as e:
            await self._reply(update, html.escape(str(e.args[0])))
            return

        label = self.coordinator.selected_adapter(user_id).label
        msg = f"Agent set to {html.escape(label)}. /claude to start"
        active = self.coordinator.active_adapter(user_id)
        if active is not None and active.name != name:
            msg += f"\n\n{html.escape(active.label)} is still running until /stop or the next start."
        await self._reply(update, msg)

    async def _cmd_stop(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        active = self.coordinator.active_adapter(user_id)
        if active is None:
            await self._reply(update, "No session running")
            return
        await self.coordinator.stop(user_id)
        await self._reply(update, f"{active.label} stopped")

    async def _cmd_interrupt(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        if await self.coordinator.interrupt(user_id):
            await self._reply(update, "Ctrl+C sent")
        else:
            await self._reply(update, "No session running")

    async def _cmd_yes(self, update, context):
        user_id = await self._authorize(update)
        if user_id is not None:
            await self.coordinator.send_input(user_id, "y")

    async def _cmd_no(self, update, context):
        user_id = await self._authorize(update)
        if user_id is not None:
            await self.coordinator.send_input(user_id, "n")

    async def _send_key(self, update, key: str):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        adapter = self.coordinator.active_adapter(user_id)
        if adapter is None:
            await self._reply(update, "No session running")
            return

        if key == "enter":
            error = await adapter.send_enter(user_id)
        elif key == "tab":
            error = await adapter.send_tab(user_id)
        else:
            error = await adapter.send_arrow(user_id, key)
        if error:
            await self._reply(update, html.escape(error))

    async def _cmd_enter(self, update, context):
        await self._send_key(update, "enter")

    async def _cmd_up(self, update, context):
        await self._send_key(update, "up")

    async def _cmd_down(self, update, context):
        await self._send_key(update, "down")

    async def _cmd_tab(self, update, context):
        await self._send_key(update, "tab")

    async def _cmd_model(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        adapter = self.coordinator.active_adapter(user_id) or self.coordinator.selected_adapter(user_id)
        if not adapter.supports(Capability.MODELS):
            await self._reply(update, html.escape(f"{adapter.label} does not support model selection"))
            return

        query = " ".join(context.args or []).strip()
        try:
            if not query:
                models = await adapter.get_available_models()
                await self._reply(update, format_model_list(adapter.get_model(user_id), models))
                return
            error = await adapter.set_model(user_id, query)
        except Exception as e:
            logger.error(f"Model command failed for user {user_id}: {e}")
            await self._reply(update, f"Error: {html.escape(str(e))}")
            return

        if error:
            await self._reply(update, html.escape(error))
        else:
            model = adapter.get_model(user_id) or query
            await self._reply(update, f"Model set to <code>{html.escape(model)}</code>")

    async def _cmd_sessions(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        adapter = self.coordinator.selected_adapter(user_id)
        try:
            sessions = await adapter.list_sessions()
        except BridgeError as e:
            logger.error(f"Failed to list sessions: {e}")
            await self._reply(update, f"Error: {html.escape(str(e))}")
            return
        await self._reply(update, format_session_list(sessions))

    async def _cmd_resume(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        if not context.args:
            await self._reply(update, "Usage: /resume &lt;id&gt;\n\n/sessions to list them")
            return
        session_id = context.args[0]
        adapter = self.coordinator.selected_adapter(user_id)
        await self._reply(update, f"Resuming {adapter.label} session <code>{html.escape(session_id)}</code>...")
        try:
            await self.coordinator.resume(user_id, session_id)
        except BridgeError as e:
            logger.error(f"Failed to resume {session_id} for user {user_id}: {e}")
            await self._reply(update, f"Error: {html.escape(str(e))}")

    async def _cmd_output(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        adapter = self.coordinator.active_adapter(user_id)
        if adapter is None:
            await self._reply(update, "No session running")
            return
        if not adapter.supports(Capability.FULL_OUTPUT):
            await self._reply(update, html.escape(f"{adapter.label} does not support full output"))
            return
        output = await adapter.get_full_output(user_id)
        await self._reply(update, f"<pre>{html.escape(truncate_output(output or ''))}</pre>")

    async def _cmd_clear(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        deleted = await self.delivery.clear_messages(user_id)
        await self._reply(update, f"Deleted {deleted} messages")

    async def _cmd_forget(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        await self.coordinator.forget(user_id)
        await self._reply(update, "Configuration deleted")

    # ─── Text handler ──────────────────────────────────────────────────

    async def _handle_text(self, update, context):
        user_id = await self._authorize(update)
        if user_id is None:
            return
        text = (update.message.text or "").strip()
        if not text:
            return

        if self.coordinator.is_active(user_id):
            if not await self.coordinator.send_input(user_id, text):
                await self._reply(update, "Failed to send to the agent")
            return

        instruction = parse_start_phrase(text)
        if instruction:
            await self._start_agent(update, user_id, instruction)
            return

        label = self.coordinator.selected_adapter(user_id).label
        await self._reply(
            update,
            f"{label} not running. /claude to start, or send <code>claude &lt;task&gt;</code>",
        )

    async def _handle_error(self, update, context):
        logger.error(f"Update handling failed: {context.error}")
        message = getattr(update, "effective_message", None)
        if message is not None:
            try:
                await message.reply_text(f"Error: {context.error}")
            except Exception as e:
                logger.error(f"Failed to report error: {e}")

    # ─── Helpers ───────────────────────────────────────────────────────

    async def _reply(self, update, text: str, parse_mode: str = "HTML", reply_markup=None):
        """Send reply with optional inline keyboard."""
        if len(text) > MAX_REPLY_LENGTH:
            text = text[:MAX_REPLY_LENGTH - 6] + "\n..."
        message = update.effective_message
        try:
            send = lambda: message.reply_text(text, parse_mode=parse_mode, reply_markup=reply_markup)
            user = update.effective_user
            if self.delivery is not None and user is not None:
                await self.delivery.governor.call(user.id, send)
            else:
                await send()
        except Exception as e:
            logger.error(f"Failed to send reply: {e}")
