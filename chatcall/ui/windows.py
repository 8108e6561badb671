from __future__ import annotations

from PySide6 import QtCore, QtWidgets

from .widgets import CallCard, LogPanel


class CallWindow(QtWidgets.QMainWindow):
	call_clicked = QtCore.Signal()
	accept_clicked = QtCore.Signal()
	decline_clicked = QtCore.Signal()
	mute_clicked = QtCore.Signal()
	hangup_clicked = QtCore.Signal()

	def __init__(self):
		super().__init__()
		self.setWindowTitle("chatcall")

		central = QtWidgets.QWidget()
		self.setCentralWidget(central)

		self.card = CallCard()
		self.log_panel = LogPanel()

		self.call_btn = QtWidgets.QPushButton("Call")
		self.accept_btn = QtWidgets.QPushButton("Accept")
		self.decline_btn = QtWidgets.QPushButton("Decline")
		self.mute_btn = QtWidgets.QPushButton("Mute")
		self.mute_btn.setCheckable(True)
		self.hangup_btn = QtWidgets.QPushButton("Hang up")

		btn_row = QtWidgets.QHBoxLayout()
		btn_row.addWidget(self.call_btn)
		btn_row.addWidget(self.accept_btn)
		btn_row.addWidget(self.decline_btn)
		btn_row.addStretch(1)
		btn_row.addWidget(self.mute_btn)
		btn_row.addWidget(self.hangup_btn)

		main = QtWidgets.QVBoxLayout(central)
		main.addWidget(self.card)
		main.addLayout(btn_row)
		main.addWidget(QtWidgets.QLabel("Log"))
		main.addWidget(self.log_panel, 1)

		self.status = QtWidgets.QStatusBar()
		self.setStatusBar(self.status)

		self.call_btn.clicked.connect(self.call_clicked.emit)
		self.accept_btn.clicked.connect(self.accept_clicked.emit)
		self.decline_btn.clicked.connect(self.decline_clicked.emit)
		self.mute_btn.clicked.connect(self.mute_clicked.emit)
		self.hangup_btn.clicked.connect(self.hangup_clicked.emit)

		self.set_controls(in_call=False, ringing=False)

	def set_status(self, text: str) -> None:
		self.status.showMessage(text)

	@QtCore.Slot(bool, bool)
	def set_controls(self, in_call: bool, ringing: bool) -> None:
		"""Enable only the buttons that make sense right now."""
		self.call_btn.setEnabled(not in_call and not ringing)
		self.accept_btn.setEnabled(ringing and not in_call)
		self.decline_btn.setEnabled(ringing and not in_call)
		self.mute_btn.setEnabled(in_call)
		self.hangup_btn.setEnabled(in_call)
		if not in_call:
			self.mute_btn.setChecked(False)
