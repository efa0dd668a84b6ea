LOGIN = {
    "username_input": "#j_provider",
    "clinic_input": "#j_username",
    "password_input": "#j_password_aux",
    "submit_button": "#sub",
    "cancel_button": "#Form\\:btnCancel",
}

REGISTRATION = {
    "checkin_menu": "#iconFormMenu\\:j_id161\\:j_id165",
    "no_card_button": "#Form\\:no-card2",
    "no_card_dialog": "#mpNoCardContentDiv",
    "card_number_input": "#insuranceNoCardForm\\:registrationId",
    "justification_select": "#insuranceNoCardForm\\:justicationSend\\:justificationID",
    "send_button": "#insuranceNoCardForm\\:btnSend",
    "ok_button": "#insuranceNoCardForm\\:btnOK",
    "confirm_button": "#formError\\:btnReturn",
    "no_biometric_button": 'input[value="REGISTRO SEM BIOMETRIA"]',
    "no_biometric_dialog": "#mpNoBioCDiv",
    "bio_justification_select": 'select[name^="insuranceNoBioForm:justicationSend:"]',
    "bio_send_button": "#insuranceNoBioForm\\:btnSend2",
}

VALIDATION = {
    "first_answer": "#Form\\:firstAnswer",
    "second_answer": 'input[name="Form:j_id304"]',
    "third_answer": 'input[name="Form:j_id308"]',
    "submit_button": "#Form\\:btnSend",
}

AUTHORIZATION = {
    "contact_modal": "#mpUpdateInsuranceUserContact",
    "contact_modal_cancel": "#updateInsuraceUserContactForm\\:j_id596",
    "refresh_icon": 'img[src="/autorizador/images/refresh-icon.png"]',
    "guides_table": "#Form\\:guides\\:guides_grid",
}

PROCEDURE = {
    "date_input": "#Form\\:procedures\\:0\\:date",
    "executant_search": "#Form\\:executantTable img[src*='search.png']",
    "professional_table": "#Zoom_Professional\\:providers",
    "execute_button": "#Form\\:j_id1127",
    "result_dialog": "#mpErrorsContentTable",
    "result_message": ".rich-messages-label",
    "result_ok_button": "#formError\\:btnReturn",
    "services_table": "#Form\\:servicesTable",
    "realization_date_cell": "#Form\\:servicesTable tbody tr:first-child td:first-child span",
}

DIGITAL_RELEASE_TEXT = "Liberação Digital"
